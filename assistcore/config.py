"""
Typed configuration model with precedence-based loader.

Precedence (lowest to highest):
    defaults < config file (YAML) < profile < env vars < CLI flags < per-session overrides
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field, fields, asdict
from pathlib import Path
from typing import Any

import yaml

from assistcore.llm.types import ModelConfig
from assistcore.session.session import SessionOptions


# ---------------------------------------------------------------------------
# Section dataclasses
# ---------------------------------------------------------------------------

@dataclass
class LLMProviderConfig:
    provider: str = "openai"
    model: str = "gpt-4o"
    api_base: str = ""
    api_key_env: str = ""
    max_context_tokens: int = 128_000
    max_output_tokens: int = 2_000
    temperature: float = 0.7
    timeout_seconds: int = 120


@dataclass
class BudgetConfig:
    ceiling_tokens: int = 0          # 0 = derive from the provider window
    headroom_tokens: int = 200


@dataclass
class RetryConfig:
    max_attempts: int = 3
    base_delay_seconds: float = 1.0
    max_delay_seconds: float = 30.0
    min_interval_seconds: float = 0.5


@dataclass
class ContextConfig:
    probe_enabled: bool = True
    probe_first_turn_only: bool = True
    max_followup_rounds: int = 1
    tool_timeout_seconds: int = 30


@dataclass
class ToolsConfig:
    screenshot_path: str = ""         # file the take_screenshot tool reads
    plugins_enabled: bool = False
    allow_plugins: list[str] = field(default_factory=list)


@dataclass
class SearchConfig:
    enabled: bool = False
    api_key_env: str = "TAVILY_API_KEY"
    max_results: int = 3


@dataclass
class LoggingConfig:
    level: str = "WARNING"
    file: str = ""


# ---------------------------------------------------------------------------
# Root config
# ---------------------------------------------------------------------------

@dataclass
class AssistConfig:
    llm: LLMProviderConfig = field(default_factory=LLMProviderConfig)
    budget: BudgetConfig = field(default_factory=BudgetConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)
    context: ContextConfig = field(default_factory=ContextConfig)
    search: SearchConfig = field(default_factory=SearchConfig)
    tools: ToolsConfig = field(default_factory=ToolsConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    profiles: dict[str, dict[str, Any]] = field(default_factory=dict)
    source: str = ""

    # ----- per-session overrides (applied last) ----
    _overrides: dict[str, Any] = field(default_factory=dict, repr=False)

    def set_override(self, dotpath: str, value: Any) -> None:
        """Set a per-session override using dot notation (e.g. 'llm.model')."""
        self._overrides[dotpath] = value
        _apply_dotpath(self, dotpath, value)

    def get_override(self, dotpath: str) -> Any | None:
        return self._overrides.get(dotpath)

    def to_dict(self) -> dict:
        d = asdict(self)
        d.pop("_overrides", None)
        return d

    # ----- views for the engine ----

    def model_config(self, credential: str = "") -> ModelConfig:
        llm = self.llm
        return ModelConfig(
            provider=llm.provider,
            model=llm.model,
            temperature=llm.temperature,
            max_output_tokens=llm.max_output_tokens,
            credential=credential,
            api_base=llm.api_base,
            max_context_tokens=llm.max_context_tokens,
            timeout=float(llm.timeout_seconds),
        )

    def session_options(self) -> SessionOptions:
        return SessionOptions(
            max_attempts=self.retry.max_attempts,
            base_delay=self.retry.base_delay_seconds,
            max_delay=self.retry.max_delay_seconds,
            min_interval=self.retry.min_interval_seconds,
            ceiling_tokens=self.budget.ceiling_tokens,
            headroom_tokens=self.budget.headroom_tokens,
            probe_enabled=self.context.probe_enabled,
            probe_first_turn_only=self.context.probe_first_turn_only,
            max_followup_rounds=self.context.max_followup_rounds,
            tool_timeout=float(self.context.tool_timeout_seconds),
            search_max_results=self.search.max_results,
        )


class ConfigError(ValueError):
    """Raised by ``load_config`` for a malformed file or an unknown profile."""


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _apply_dotpath(obj: Any, dotpath: str, value: Any) -> None:
    """Walk obj via dotpath and set the final attribute."""
    parts = dotpath.split(".")
    for part in parts[:-1]:
        obj = getattr(obj, part)
    setattr(obj, parts[-1], value)


def _deep_merge(base: dict, overlay: dict) -> dict:
    """Recursively merge overlay into base, returning a new dict."""
    merged = dict(base)
    for k, v in overlay.items():
        if k in merged and isinstance(merged[k], dict) and isinstance(v, dict):
            merged[k] = _deep_merge(merged[k], v)
        else:
            merged[k] = v
    return merged


def _coerce(value: str, target_type: type) -> Any:
    """Coerce a string env value to the target type."""
    if target_type is bool:
        return value.lower() in ("1", "true", "yes", "on")
    if target_type is int:
        return int(value)
    if target_type is float:
        return float(value)
    if target_type is list:
        return [s.strip() for s in value.split(",") if s.strip()]
    return value


def _build_section(cls: type, raw: dict) -> Any:
    """Build a dataclass section from a raw dict, ignoring unknown keys."""
    valid_fields = {f.name for f in fields(cls)}
    filtered = {k: v for k, v in (raw or {}).items() if k in valid_fields}
    return cls(**filtered)


# ---------------------------------------------------------------------------
# ENV var mapping
# ---------------------------------------------------------------------------

_ENV_MAP: dict[str, tuple[str, type]] = {
    "ASSIST_LLM_PROVIDER":           ("llm.provider", str),
    "ASSIST_LLM_MODEL":              ("llm.model", str),
    "ASSIST_LLM_API_BASE":           ("llm.api_base", str),
    "ASSIST_LLM_API_KEY_ENV":        ("llm.api_key_env", str),
    "ASSIST_LLM_MAX_CONTEXT":        ("llm.max_context_tokens", int),
    "ASSIST_LLM_MAX_OUTPUT":         ("llm.max_output_tokens", int),
    "ASSIST_LLM_TEMPERATURE":        ("llm.temperature", float),
    "ASSIST_LLM_TIMEOUT":            ("llm.timeout_seconds", int),
    "ASSIST_BUDGET_CEILING":         ("budget.ceiling_tokens", int),
    "ASSIST_BUDGET_HEADROOM":        ("budget.headroom_tokens", int),
    "ASSIST_RETRY_MAX_ATTEMPTS":     ("retry.max_attempts", int),
    "ASSIST_RETRY_BASE_DELAY":       ("retry.base_delay_seconds", float),
    "ASSIST_RETRY_MAX_DELAY":        ("retry.max_delay_seconds", float),
    "ASSIST_RETRY_MIN_INTERVAL":     ("retry.min_interval_seconds", float),
    "ASSIST_CONTEXT_PROBE":          ("context.probe_enabled", bool),
    "ASSIST_CONTEXT_FIRST_TURN_ONLY": ("context.probe_first_turn_only", bool),
    "ASSIST_CONTEXT_FOLLOWUP_ROUNDS": ("context.max_followup_rounds", int),
    "ASSIST_CONTEXT_TOOL_TIMEOUT":   ("context.tool_timeout_seconds", int),
    "ASSIST_SEARCH_ENABLED":         ("search.enabled", bool),
    "ASSIST_SEARCH_API_KEY_ENV":     ("search.api_key_env", str),
    "ASSIST_SEARCH_MAX_RESULTS":     ("search.max_results", int),
    "ASSIST_TOOLS_SCREENSHOT_PATH":  ("tools.screenshot_path", str),
    "ASSIST_TOOLS_PLUGINS":          ("tools.plugins_enabled", bool),
    "ASSIST_TOOLS_ALLOW_PLUGINS":    ("tools.allow_plugins", list),
    "ASSIST_LOG_LEVEL":              ("logging.level", str),
    "ASSIST_LOG_FILE":               ("logging.file", str),
}


DEFAULT_CONFIG_PATHS: tuple[str, ...] = (
    "assist.yaml",
    "assist.yml",
    "~/.config/assist/config.yaml",
)


def find_config_file(search_paths: tuple[str, ...] = DEFAULT_CONFIG_PATHS) -> Path | None:
    """Return the first existing config file from *search_paths*."""
    for candidate in search_paths:
        p = Path(candidate).expanduser()
        if p.is_file():
            return p
    return None


# ---------------------------------------------------------------------------
# Loader
# ---------------------------------------------------------------------------

def load_config(
    config_path: str | Path | None = None,
    *,
    profile: str | None = None,
    cli_overrides: dict[str, Any] | None = None,
    environ: dict[str, str] | None = None,
) -> AssistConfig:
    """
    Build an AssistConfig by layering sources in precedence order:

        defaults  <  config file  <  profile  <  env vars  <  CLI flags

    Parameters
    ----------
    config_path : path to YAML config file; the default locations are
        searched when omitted
    profile : name of a profile to apply from the config file
    cli_overrides : dict of dotpath -> value CLI flag overrides
    environ : environment mapping (``os.environ`` by default)
    """
    raw: dict[str, Any] = {}
    env = os.environ if environ is None else environ

    # --- 1. Config file ---
    path = Path(config_path).expanduser() if config_path is not None else find_config_file()
    if path is not None and path.is_file():
        with path.open("r", encoding="utf-8") as f:
            file_data = yaml.safe_load(f) or {}
        if not isinstance(file_data, dict):
            raise ConfigError(f"{path}: top level must be a mapping")
        raw = _deep_merge(raw, file_data)

    # --- 2. Profile overlay ---
    if profile:
        profile_data = raw.get("profiles", {}).get(profile)
        if profile_data is None:
            raise ConfigError(f"Unknown profile: {profile}")
        raw = _deep_merge(raw, profile_data)

    # --- Build sections from raw ---
    cfg = AssistConfig(
        llm=_build_section(LLMProviderConfig, raw.get("llm", {})),
        budget=_build_section(BudgetConfig, raw.get("budget", {})),
        retry=_build_section(RetryConfig, raw.get("retry", {})),
        context=_build_section(ContextConfig, raw.get("context", {})),
        search=_build_section(SearchConfig, raw.get("search", {})),
        tools=_build_section(ToolsConfig, raw.get("tools", {})),
        logging=_build_section(LoggingConfig, raw.get("logging", {})),
        profiles=raw.get("profiles", {}),
        source=str(path) if path is not None and path.is_file() else "",
    )

    # --- 3. Env var overrides ---
    for env_var, (dotpath, target_type) in _ENV_MAP.items():
        val = env.get(env_var)
        if val is not None:
            _apply_dotpath(cfg, dotpath, _coerce(val, target_type))

    # --- 4. CLI flag overrides ---
    if cli_overrides:
        for dotpath, value in cli_overrides.items():
            _apply_dotpath(cfg, dotpath, value)

    return cfg


def validate_config(cfg: AssistConfig) -> list[str]:
    """Return a list of problems; empty when the config is usable."""
    problems: list[str] = []
    if cfg.llm.max_output_tokens <= 0:
        problems.append("llm.max_output_tokens must be positive")
    if cfg.llm.max_context_tokens <= cfg.llm.max_output_tokens:
        problems.append("llm.max_context_tokens must exceed llm.max_output_tokens")
    if not 0.0 <= cfg.llm.temperature <= 2.0:
        problems.append("llm.temperature must be between 0 and 2")
    if cfg.retry.max_attempts < 1:
        problems.append("retry.max_attempts must be at least 1")
    if cfg.retry.base_delay_seconds < 0 or cfg.retry.max_delay_seconds < 0:
        problems.append("retry delays must not be negative")
    if cfg.retry.min_interval_seconds < 0:
        problems.append("retry.min_interval_seconds must not be negative")
    if cfg.budget.ceiling_tokens < 0:
        problems.append("budget.ceiling_tokens must not be negative")
    if cfg.context.max_followup_rounds < 0:
        problems.append("context.max_followup_rounds must not be negative")
    if cfg.search.max_results < 1:
        problems.append("search.max_results must be at least 1")
    return problems
