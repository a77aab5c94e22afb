"""
Memory service — per-chat conversation history and the system prompt.

History lives in the profile workdir as JSON lines,
``<workdir>/memory/<account_tag>/<chat_id>.jsonl``; the last
MEMORY_MAX_CONTEXT_ENTRIES entries are injected into each provider call.
The system prompt is the base instructions plus the soul file, the profile's
memory file and the global memory file, whichever exist.
"""
from __future__ import annotations

import json
import logging
import re
from datetime import datetime, timezone
from pathlib import Path

from masix.services.profile_resolver import BotProfile

logger = logging.getLogger(__name__)

MEMORY_MAX_CONTEXT_ENTRIES = 12
MAX_PROMPT_FILE_CHARS = 8000

BASE_SYSTEM_PROMPT = (
    "You are MasiX, a concise assistant running inside a chat app. "
    "Answer in the user's language. Use the available tools only when they are needed."
)

_UNSAFE_NAME_RE = re.compile(r"[^\w.+-]")


def _read_prompt_file(path: Path | None) -> str:
    if path is None or not path.is_file():
        return ""
    text = path.read_text(encoding="utf-8", errors="replace").strip()
    return text[:MAX_PROMPT_FILE_CHARS]


class MemoryService:
    def __init__(self, *, soul_file: str | None = None, global_memory_file: str | None = None) -> None:
        self.soul_file = Path(soul_file).expanduser() if soul_file else None
        self.global_memory_file = Path(global_memory_file).expanduser() if global_memory_file else None

    def system_prompt(self, profile: BotProfile) -> str:
        sections = [BASE_SYSTEM_PROMPT]
        for title, path in (
            ("Persona", self.soul_file),
            ("Bot memory", profile.memory_file),
            ("Global memory", self.global_memory_file),
        ):
            text = _read_prompt_file(path)
            if text:
                sections.append(f"## {title}\n{text}")
        return "\n\n".join(sections)

    @staticmethod
    def history_path(profile: BotProfile, account_tag: str, chat_id: str) -> Path:
        return (
            profile.workdir
            / "memory"
            / _UNSAFE_NAME_RE.sub("_", account_tag)
            / f"{_UNSAFE_NAME_RE.sub('_', chat_id)}.jsonl"
        )

    def get_history(
        self,
        profile: BotProfile,
        account_tag: str,
        chat_id: str,
        max_entries: int = MEMORY_MAX_CONTEXT_ENTRIES,
    ) -> list[dict[str, str]]:
        """Return the last ``max_entries`` as [{"role": "user"|"assistant", "content": str}]."""
        path = self.history_path(profile, account_tag, chat_id)
        if not path.is_file():
            return []
        entries: list[dict[str, str]] = []
        for line in path.read_text(encoding="utf-8").splitlines():
            if not line.strip():
                continue
            try:
                record = json.loads(line)
            except json.JSONDecodeError:
                logger.warning("Skipping corrupt memory line in %s", path)
                continue
            if record.get("role") in ("user", "assistant") and isinstance(record.get("content"), str):
                entries.append({"role": record["role"], "content": record["content"]})
        return entries[-max_entries:] if max_entries > 0 else []

    def save_exchange(
        self,
        profile: BotProfile,
        account_tag: str,
        chat_id: str,
        user_text: str,
        assistant_text: str,
    ) -> None:
        path = self.history_path(profile, account_tag, chat_id)
        path.parent.mkdir(parents=True, exist_ok=True)
        stamp = datetime.now(timezone.utc).isoformat()
        with path.open("a", encoding="utf-8") as fp:
            for role, content in (("user", user_text), ("assistant", assistant_text)):
                fp.write(json.dumps({"ts": stamp, "role": role, "content": content}, ensure_ascii=False) + "\n")

    def clear(self, profile: BotProfile, account_tag: str, chat_id: str) -> bool:
        path = self.history_path(profile, account_tag, chat_id)
        if not path.exists():
            return False
        path.unlink()
        return True
