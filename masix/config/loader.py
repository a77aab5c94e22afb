"""
Runtime configuration — one YAML file validated into frozen pydantic models.

The validated ``RuntimeConfig`` is the immutable snapshot handed to every
component constructor at startup. Cross-reference checks (provider names,
profile names, account tags) run here so that dangling references fail the
boot, never a message.
"""
from __future__ import annotations

import enum
import logging
import os
import re
from pathlib import Path
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

logger = logging.getLogger(__name__)
_ENV_VAR_PATTERN = re.compile(r"\$\{([A-Z0-9_]+)(?::-([^}]*))?\}")

DEFAULT_ACCOUNT_TAG = "__default__"
DEFAULT_BASE_URL = "https://api.openai.com/v1"
DEFAULT_MODEL = "gpt-4o-mini"


class _Frozen(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore")


class GroupMode(str, enum.Enum):
    all = "all"
    users_only = "users_only"
    tag_only = "tag_only"
    users_or_tag = "users_or_tag"
    listen_only = "listen_only"


class UserToolsMode(str, enum.Enum):
    none = "none"
    selected = "selected"


# ---------------------------------------------------------------------------
# Schemas
# ---------------------------------------------------------------------------

class CoreConfig(_Frozen):
    data_dir: str = "./data"
    timezone: str | None = None
    soul_file: str | None = None
    global_memory_file: str | None = None


class ProviderConfig(_Frozen):
    name: str
    api_key: str = ""
    base_url: str = DEFAULT_BASE_URL
    model: str = DEFAULT_MODEL
    provider_type: str = "openai"

    @field_validator("base_url")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        return v.rstrip("/")

    def target_key(self) -> str:
        return f"{self.provider_type.strip().lower()}|{self.base_url.lower()}|{self.model.strip().lower()}"


class ProvidersConfig(_Frozen):
    default_provider: str = ""
    providers: tuple[ProviderConfig, ...] = ()

    def get(self, name: str) -> ProviderConfig | None:
        for provider in self.providers:
            if provider.name == name:
                return provider
        return None


class RetryPolicyConfig(_Frozen):
    window_secs: float = 600
    initial_delay_secs: float = 2
    backoff_factor: float = 2
    max_delay_secs: float = 30


class BotProfileConfig(_Frozen):
    name: str
    workdir: str
    memory_file: str
    provider_primary: str
    provider_fallback: tuple[str, ...] = ()
    vision_provider: str | None = None
    retry: RetryPolicyConfig | None = None


class BotsConfig(_Frozen):
    strict_account_profile_mapping: bool = False
    profiles: tuple[BotProfileConfig, ...] = ()


class TelegramAccount(_Frozen):
    bot_token: str
    bot_name: str | None = None
    bot_profile: str | None = None
    admins: frozenset[int] = frozenset()
    users: frozenset[int] = frozenset()
    readonly: frozenset[int] = frozenset()
    allowed_chats: frozenset[int] | None = None
    group_mode: GroupMode = GroupMode.all
    auto_register_users: bool = False
    user_tools_mode: UserToolsMode = UserToolsMode.none
    user_allowed_tools: tuple[str, ...] = ()

    @property
    def account_tag(self) -> str:
        return account_tag_from_token(self.bot_token)


class TelegramConfig(_Frozen):
    poll_timeout_secs: int | None = None
    accounts: tuple[TelegramAccount, ...] = ()


class ForwardingConfig(_Frozen):
    enabled: bool = False
    admins: frozenset[str] = frozenset()
    users: frozenset[str] = frozenset()
    allowed_senders: frozenset[str] = frozenset()
    forward_to_telegram_chat_id: int | None = None
    forward_to_telegram_account_tag: str | None = None
    forward_prefix: str | None = None


class WhatsappConfig(ForwardingConfig):
    read_only: bool = True
    ingress_shared_secret: str | None = None
    max_message_chars: int = 4000


class SmsConfig(ForwardingConfig):
    watch_interval_secs: int = 30
    source_command: tuple[str, ...] = ("termux-sms-list", "-l", "50")


class McpServerConfig(_Frozen):
    name: str
    command: str
    args: tuple[str, ...] = ()
    env: dict[str, str] = Field(default_factory=dict)


class McpConfig(_Frozen):
    enabled: bool = False
    servers: tuple[McpServerConfig, ...] = ()


class ExecConfig(_Frozen):
    enabled: bool = False
    timeout_secs: float = 15
    max_output_chars: int = 3500
    allowlist: tuple[str, ...] = ("pwd", "ls", "whoami", "date", "uname", "df", "du", "free", "uptime", "id", "git")


class RateLimitConfig(_Frozen):
    messages_per_minute: int


class PolicyConfig(_Frozen):
    denylist: frozenset[str] = frozenset()
    rate_limit: RateLimitConfig | None = None


class RuntimeConfig(_Frozen):
    core: CoreConfig = CoreConfig()
    providers: ProvidersConfig = ProvidersConfig()
    bots: BotsConfig = BotsConfig()
    telegram: TelegramConfig | None = None
    whatsapp: WhatsappConfig | None = None
    sms: SmsConfig | None = None
    mcp: McpConfig | None = None
    exec: ExecConfig = ExecConfig()
    policy: PolicyConfig = PolicyConfig()

    def telegram_accounts(self) -> tuple[TelegramAccount, ...]:
        return self.telegram.accounts if self.telegram else ()

    def telegram_account(self, account_tag: str) -> TelegramAccount | None:
        for account in self.telegram_accounts():
            if account.account_tag == account_tag:
                return account
        return None

    def profile(self, name: str) -> BotProfileConfig | None:
        for profile in self.bots.profiles:
            if profile.name == name:
                return profile
        return None


def account_tag_from_token(token: str) -> str:
    """Numeric bot id in front of ``:`` in a Telegram token; stable across token rotation."""
    return token.split(":", 1)[0].strip()


def resolve_timezone(name: str | None) -> ZoneInfo:
    """Configured IANA zone, else the TZ environment variable, else UTC."""
    return ZoneInfo(name or os.getenv("TZ") or "UTC")


# ---------------------------------------------------------------------------
# Loader
# ---------------------------------------------------------------------------

class ConfigValidationError(RuntimeError):
    """Raised when the runtime config fails schema or cross-reference validation."""

    def __init__(self, problems: list[str]) -> None:
        self.problems = problems
        detail = "\n".join(f"  - {p}" for p in problems)
        super().__init__(f"Config validation failed, fix the following before starting:\n{detail}")


class ConfigLoader:
    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)

    def _expand_env_value(self, value: Any) -> Any:
        if isinstance(value, dict):
            return {k: self._expand_env_value(v) for k, v in value.items()}
        if isinstance(value, list):
            return [self._expand_env_value(v) for v in value]
        if isinstance(value, str):
            return self._expand_env_string(value)
        return value

    def _expand_env_string(self, value: str) -> str:
        def _replace(match: re.Match[str]) -> str:
            key = match.group(1)
            default = match.group(2)
            env_value = os.getenv(key)
            if env_value is not None:
                return env_value
            if default is not None:
                return default
            logger.warning("Config placeholder %s is not set; substituting empty string", key)
            return ""

        return _ENV_VAR_PATTERN.sub(_replace, value)

    def load_yaml(self) -> dict[str, Any]:
        if not self.path.exists():
            raise ConfigValidationError([f"config file not found: {self.path}"])
        with self.path.open("r", encoding="utf-8") as fp:
            try:
                data = yaml.safe_load(fp) or {}
            except yaml.YAMLError as exc:
                raise ConfigValidationError([f"{self.path}: invalid YAML: {exc}"]) from exc
        if not isinstance(data, dict):
            raise ConfigValidationError([f"{self.path}: top level must be a mapping"])
        return self._expand_env_value(data)

    def load_and_validate(self) -> RuntimeConfig:
        """Load + validate the config file. Raises ConfigValidationError on any problem.

        Call at boot to fail fast rather than discovering bad config at runtime.
        """
        config = parse_config(self.load_yaml())
        logger.info(
            "Config validated OK: %d providers, %d profiles, %d telegram accounts",
            len(config.providers.providers),
            len(config.bots.profiles),
            len(config.telegram_accounts()),
        )
        return config


def parse_config(raw: dict[str, Any]) -> RuntimeConfig:
    try:
        config = RuntimeConfig.model_validate(raw)
    except ValidationError as exc:
        problems = [
            f"{'.'.join(str(part) for part in err['loc'])}: {err['msg']}" for err in exc.errors()
        ]
        raise ConfigValidationError(problems) from exc

    problems = validate_references(config)
    if problems:
        raise ConfigValidationError(problems)
    return config


def validate_references(config: RuntimeConfig) -> list[str]:
    problems: list[str] = []
    problems.extend(_validate_providers(config))
    problems.extend(_validate_profiles(config))
    problems.extend(_validate_telegram(config))
    problems.extend(_validate_secondary_channels(config))

    if config.core.timezone:
        try:
            resolve_timezone(config.core.timezone)
        except (ZoneInfoNotFoundError, ValueError):
            problems.append(f"core.timezone '{config.core.timezone}' is not a known IANA zone")
    if config.exec.timeout_secs <= 0:
        problems.append("exec.timeout_secs must be > 0")
    if config.exec.max_output_chars < 128:
        problems.append("exec.max_output_chars must be >= 128")
    if config.policy.rate_limit and config.policy.rate_limit.messages_per_minute <= 0:
        problems.append("policy.rate_limit.messages_per_minute must be > 0")
    if config.mcp:
        seen_servers: set[str] = set()
        for server in config.mcp.servers:
            if server.name in seen_servers:
                problems.append(f"mcp.servers: duplicate server name '{server.name}'")
            seen_servers.add(server.name)
    return problems


def _validate_providers(config: RuntimeConfig) -> list[str]:
    problems: list[str] = []
    names: set[str] = set()
    targets: dict[str, str] = {}
    for provider in config.providers.providers:
        name = provider.name.strip()
        if not name:
            problems.append("providers: provider name cannot be empty")
            continue
        if name in names:
            problems.append(f"providers: duplicate provider name '{name}'")
        names.add(name)
        key = provider.target_key()
        if key in targets:
            problems.append(
                f"providers: '{name}' duplicates target of '{targets[key]}' "
                f"({provider.provider_type} {provider.base_url} {provider.model})"
            )
        else:
            targets[key] = name

    default = config.providers.default_provider.strip()
    if config.providers.providers or default:
        if not default:
            problems.append("providers.default_provider must be set")
        elif default not in names:
            problems.append(f"providers.default_provider '{default}' is not defined")
    return problems


def _validate_profiles(config: RuntimeConfig) -> list[str]:
    problems: list[str] = []
    provider_names = {p.name for p in config.providers.providers}
    seen: set[str] = set()
    workdirs: dict[str, str] = {}

    for profile in config.bots.profiles:
        name = profile.name.strip()
        where = f"bots.profiles['{name}']"
        if not name:
            problems.append("bots.profiles: profile name cannot be empty")
            continue
        if name in seen:
            problems.append(f"bots.profiles: duplicate profile name '{name}'")
        seen.add(name)

        if not profile.workdir.strip():
            problems.append(f"{where}.workdir cannot be empty")
        else:
            resolved = str(Path(profile.workdir).expanduser().resolve())
            if resolved in workdirs:
                problems.append(f"{where}.workdir is already owned by profile '{workdirs[resolved]}'")
            workdirs[resolved] = name
        if not profile.memory_file.strip():
            problems.append(f"{where}.memory_file cannot be empty")

        if profile.provider_primary not in provider_names:
            problems.append(f"{where}.provider_primary '{profile.provider_primary}' is not defined")
        if profile.vision_provider and profile.vision_provider not in provider_names:
            problems.append(f"{where}.vision_provider '{profile.vision_provider}' is not defined")

        fallbacks: set[str] = set()
        for fallback in profile.provider_fallback:
            if fallback not in provider_names:
                problems.append(f"{where}.provider_fallback '{fallback}' is not defined")
            if fallback == profile.provider_primary:
                problems.append(f"{where}.provider_fallback repeats the primary provider '{fallback}'")
            if fallback in fallbacks:
                problems.append(f"{where}.provider_fallback lists '{fallback}' twice")
            fallbacks.add(fallback)

        if profile.retry is not None:
            retry = profile.retry
            if retry.window_secs <= 0:
                problems.append(f"{where}.retry.window_secs must be > 0")
            if retry.initial_delay_secs <= 0:
                problems.append(f"{where}.retry.initial_delay_secs must be > 0")
            if retry.max_delay_secs <= 0:
                problems.append(f"{where}.retry.max_delay_secs must be > 0")
            if retry.backoff_factor < 1:
                problems.append(f"{where}.retry.backoff_factor must be >= 1")
    return problems


def _validate_telegram(config: RuntimeConfig) -> list[str]:
    problems: list[str] = []
    profile_names = {p.name for p in config.bots.profiles}
    strict = config.bots.strict_account_profile_mapping and bool(profile_names)
    tags: set[str] = set()

    for index, account in enumerate(config.telegram_accounts()):
        tag = account.account_tag
        where = f"telegram.accounts[{index}]"
        if not tag:
            problems.append(f"{where}: bot_token has no account tag before ':'")
            continue
        if tag in tags:
            problems.append(f"{where}: duplicate account tag '{tag}'")
        tags.add(tag)

        if account.bot_profile:
            if account.bot_profile not in profile_names:
                problems.append(f"{where}.bot_profile '{account.bot_profile}' is not defined")
        elif strict:
            problems.append(
                f"{where}: strict_account_profile_mapping is on but account '{tag}' has no bot_profile"
            )
        if account.user_tools_mode == UserToolsMode.selected and not account.user_allowed_tools:
            logger.warning("%s: user_tools_mode=selected with an empty allowlist grants no tools", where)
    return problems


def _validate_secondary_channels(config: RuntimeConfig) -> list[str]:
    problems: list[str] = []
    has_telegram = bool(config.telegram_accounts())
    tags = {a.account_tag for a in config.telegram_accounts()}

    def _check_forward(section: str, channel: ForwardingConfig) -> None:
        if channel.forward_to_telegram_chat_id is None:
            return
        if not has_telegram:
            problems.append(f"{section}.forward_to_telegram_chat_id requires a telegram account")
        tag = channel.forward_to_telegram_account_tag
        if tag and tag not in tags:
            problems.append(f"{section}.forward_to_telegram_account_tag '{tag}' is not a telegram account")

    whatsapp = config.whatsapp
    if whatsapp is not None and whatsapp.enabled:
        if not whatsapp.read_only:
            problems.append("whatsapp.read_only=false is not supported; the channel is inbound only")
        if not 1 <= whatsapp.max_message_chars <= 20000:
            problems.append("whatsapp.max_message_chars must be between 1 and 20000")
        _check_forward("whatsapp", whatsapp)

    sms = config.sms
    if sms is not None and sms.enabled:
        if not 1 <= sms.watch_interval_secs <= 3600:
            problems.append("sms.watch_interval_secs must be between 1 and 3600")
        if not sms.source_command:
            problems.append("sms.source_command cannot be empty")
        _check_forward("sms", sms)
    return problems
