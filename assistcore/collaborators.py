"""
Interfaces to the collaborators the engine consumes but does not own.

  - ``ScreenCapture``: screenshot acquisition (``captureScreen``).
  - ``UsageGate``: quota check the *caller* consults before submitting a
    turn.  The engine itself never enforces usage limits.
  - ``CredentialResolver``: secret lookup per provider (``credentialFor``).

Each comes with a simple default implementation used by the CLI.
"""

from __future__ import annotations

import base64
import mimetypes
import os
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path

from assistcore.llm.types import ImageAttachment


# ---------------------------------------------------------------------------
# Screen capture
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class CapturedScreen:
    """Opaque image path plus the encoded (base64) preview."""

    path: str
    preview: str
    media_type: str = "image/png"

    def to_attachment(self) -> ImageAttachment:
        return ImageAttachment(base64=self.preview, media_type=self.media_type, path=self.path)


class ScreenCapture(ABC):
    @abstractmethod
    async def capture(self) -> CapturedScreen: ...


class FileScreenCapture(ScreenCapture):
    """
    "Captures" by reading an existing image file.

    The capture mechanics are platform territory; this stand-in lets the CLI
    attach a screenshot taken by any external tool.
    """

    def __init__(self, path: str | os.PathLike) -> None:
        self.path = Path(path).expanduser()

    async def capture(self) -> CapturedScreen:
        return load_image_file(self.path)


def load_image_file(path: str | os.PathLike) -> CapturedScreen:
    """Read an image file into a ``CapturedScreen``.  Raises ``OSError``."""
    p = Path(path).expanduser()
    data = p.read_bytes()
    media_type = mimetypes.guess_type(p.name)[0] or "image/png"
    return CapturedScreen(
        path=str(p),
        preview=base64.b64encode(data).decode("ascii"),
        media_type=media_type,
    )


# ---------------------------------------------------------------------------
# Usage gate
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class UsageDecision:
    allowed: bool
    remaining: int


class UsageGate(ABC):
    @abstractmethod
    async def check(self, conversation_id: str) -> UsageDecision: ...

    async def record(self, conversation_id: str) -> None:
        """Note that a turn was submitted."""


class TurnCountUsageGate(UsageGate):
    """Allow at most *limit* turns per conversation.  ``limit <= 0`` means unlimited."""

    def __init__(self, limit: int = 0) -> None:
        self.limit = limit
        self._used: dict[str, int] = {}

    async def check(self, conversation_id: str) -> UsageDecision:
        if self.limit <= 0:
            return UsageDecision(allowed=True, remaining=-1)
        remaining = max(0, self.limit - self._used.get(conversation_id, 0))
        return UsageDecision(allowed=remaining > 0, remaining=remaining)

    async def record(self, conversation_id: str) -> None:
        self._used[conversation_id] = self._used.get(conversation_id, 0) + 1


# ---------------------------------------------------------------------------
# Credentials
# ---------------------------------------------------------------------------


class CredentialResolver(ABC):
    @abstractmethod
    def credential_for(self, provider_id: str) -> str:
        """Return the secret for *provider_id*, or ``""`` when none is needed."""


# Fallback env vars per provider, tried in order.
DEFAULT_CREDENTIAL_ENV: dict[str, tuple[str, ...]] = {
    "openai": ("OPENAI_API_KEY",),
    "anthropic": ("ANTHROPIC_API_KEY",),
    "google": ("GOOGLE_API_KEY", "GEMINI_API_KEY"),
    "local": (),
    "tavily": ("TAVILY_API_KEY",),
}


class EnvCredentialResolver(CredentialResolver):
    """
    Resolve credentials from environment variables.

    *overrides* maps a provider id to an env var name that takes precedence
    over the defaults (``llm.api_key_env`` in the config).
    """

    def __init__(
        self,
        overrides: dict[str, str] | None = None,
        environ: dict[str, str] | None = None,
    ) -> None:
        self.overrides = dict(overrides or {})
        self._environ = environ if environ is not None else os.environ

    def credential_for(self, provider_id: str) -> str:
        names: list[str] = []
        if provider_id in self.overrides:
            names.append(self.overrides[provider_id])
        names.extend(DEFAULT_CREDENTIAL_ENV.get(provider_id, ()))
        for name in names:
            value = self._environ.get(name, "")
            if value:
                return value
        return ""
