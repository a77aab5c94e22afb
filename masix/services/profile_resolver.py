from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path

from masix.config.loader import BotProfileConfig, RuntimeConfig, TelegramAccount
from masix.providers.router import RetryPolicy

logger = logging.getLogger(__name__)

SYNTHETIC_PROFILE_PREFIX = "account:"


class ResolutionError(LookupError):
    """An inbound account could not be bound to a bot profile."""


class UnknownAccount(ResolutionError):
    pass


class UnmappedAccount(ResolutionError):
    pass


@dataclass(frozen=True)
class BotProfile:
    name: str
    workdir: Path
    memory_file: Path
    provider_primary: str
    provider_fallback: tuple[str, ...] = ()
    vision_provider: str | None = None
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    synthetic: bool = False

    @classmethod
    def from_config(cls, config: BotProfileConfig) -> "BotProfile":
        workdir = Path(config.workdir).expanduser()
        memory_file = Path(config.memory_file).expanduser()
        if not memory_file.is_absolute():
            memory_file = workdir / memory_file
        return cls(
            name=config.name,
            workdir=workdir,
            memory_file=memory_file,
            provider_primary=config.provider_primary,
            provider_fallback=tuple(config.provider_fallback),
            vision_provider=config.vision_provider,
            retry=RetryPolicy.from_config(config.retry),
        )


class BotProfileResolver:
    """Maps a channel account tag to its BotProfile.

    References were already checked when the config was loaded, so the only
    per-message failures are an unknown account or, under strict mapping, an
    account without a profile.
    """

    def __init__(self, config: RuntimeConfig) -> None:
        self._config = config
        self._profiles = {p.name: BotProfile.from_config(p) for p in config.bots.profiles}
        self._accounts: dict[str, TelegramAccount] = {a.account_tag: a for a in config.telegram_accounts()}
        self._synthetic: dict[str, BotProfile] = {}

    @property
    def strict(self) -> bool:
        return self._config.bots.strict_account_profile_mapping

    def profiles(self) -> list[BotProfile]:
        return list(self._profiles.values())

    def get_profile(self, name: str) -> BotProfile | None:
        return self._profiles.get(name)

    def resolve(self, account_tag: str, *, known: bool = False) -> BotProfile:
        """Profile for ``account_tag``.

        ``known`` marks accounts that are not Telegram accounts (WhatsApp, SMS,
        cron's ``__default__``) and therefore map to the default chain.
        """
        account = self._accounts.get(account_tag)
        if account is None and not known:
            raise UnknownAccount(f"account '{account_tag}' is not configured")

        profile_name = account.bot_profile if account else None
        if profile_name:
            return self._profiles[profile_name]
        if self.strict and self._profiles:
            raise UnmappedAccount(f"account '{account_tag}' has no bot_profile and strict mapping is on")
        return self._synthetic_profile(account_tag)

    def _synthetic_profile(self, account_tag: str) -> BotProfile:
        cached = self._synthetic.get(account_tag)
        if cached is not None:
            return cached
        default = self._config.providers.default_provider
        if not default:
            raise ResolutionError("no default provider configured for unmapped accounts")
        workdir = Path(self._config.core.data_dir).expanduser() / "accounts" / account_tag
        memory_file = workdir / "MEMORY.md"
        profile = BotProfile(
            name=f"{SYNTHETIC_PROFILE_PREFIX}{account_tag}",
            workdir=workdir,
            memory_file=memory_file,
            provider_primary=default,
            synthetic=True,
        )
        self._synthetic[account_tag] = profile
        logger.info("Account %s uses the default provider chain (%s)", account_tag, default)
        return profile

    def ensure_workdirs(self) -> None:
        for profile in [*self._profiles.values(), *(self.resolve(tag) for tag in self._unmapped_tags())]:
            profile.workdir.mkdir(parents=True, exist_ok=True)

    def _unmapped_tags(self) -> list[str]:
        if self.strict and self._profiles:
            return []
        if not self._config.providers.default_provider:
            return []
        return [tag for tag, account in self._accounts.items() if not account.bot_profile]
