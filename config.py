"""
config.py — Driver Support Voice Assistant · Runtime Configuration
==================================================================
Pydantic models for every tunable parameter of the assistant.
Serialises to / deserialises from JSON.  Used by:
  • server.py        — GET/PUT /config endpoints, wires every component
  • gateway.py       — Groq completion defaults (model, temperature, …)
  • media_relay.py   — LiveKit credentials and token TTL
  • orchestrator.py  — reply deadline

Secrets for the LLM provider are NOT stored here; the gateway reads them
from the environment so a saved config file never contains an API key.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field, ValidationError

log = logging.getLogger("driver_support.config")

# Placeholder public_dump() puts in place of the LiveKit secret.
_MASK = "***"

# Never written to disk by save().
_SECRET_FIELDS = {"livekit": {"api_key", "api_secret"}}

# (env var, section, field) applied by from_env() over the file config.
_ENV_OVERRIDES = (
    ("LIVEKIT_URL", "livekit", "url"),
    ("LIVEKIT_API_KEY", "livekit", "api_key"),
    ("LIVEKIT_API_SECRET", "livekit", "api_secret"),
    ("GROQ_MODEL", "groq", "model"),
)

# ---------------------------------------------------------------------------
# Default system prompt (the 3-step scripted flow the LLM is asked to follow)
# ---------------------------------------------------------------------------

DEFAULT_SYSTEM_PROMPT = """\
You are a helpful customer support agent for Ola drivers. You speak fluent Hindi \
and help drivers with their issues. Follow this exact conversation flow:

1. When a driver reports not getting rides, greet them: "Ola customer support mein \
aapka swagat hai. Kya yeh aapka registered number hai?"

2. When they confirm their number, check status: "Aapka number blocked nahi hai. Sab theek hai."

3. Then suggest solution: "Kripya apna location badal kar phir se rides check kijiye."

Always respond in Hindi. Keep responses short and helpful. Follow the predefined flow strictly."""


# ---------------------------------------------------------------------------
# Per-component config sections
# ---------------------------------------------------------------------------

class GroqConfig(BaseModel):
    """Groq chat-completion parameters (passed to GroqChatGateway)."""
    model: str = Field(default="llama-3.1-8b-instant", description="Groq model ID")
    temperature: float = Field(default=0.7, ge=0.0, le=2.0, description="Randomness (0.0–2.0)")
    max_tokens: int = Field(default=200, ge=1, description="Max response tokens")
    top_p: float = Field(default=1.0, ge=0.0, le=1.0, description="Nucleus sampling")
    reply_timeout_sec: Optional[float] = Field(
        default=None, gt=0.0, le=120.0,
        description="Deadline for one completion; expiry routes to the fallback reply",
    )


class LiveKitConfig(BaseModel):
    """LiveKit media relay parameters (passed to LiveKitRelay)."""
    url: Optional[str] = Field(default=None, description="wss://your.livekit.cloud")
    api_key: Optional[str] = Field(default=None, description="LiveKit API key")
    api_secret: Optional[str] = Field(default=None, description="LiveKit API secret")
    token_ttl_sec: int = Field(default=3600, ge=60, le=86400, description="Participant token lifetime")
    participant_name: str = Field(default="driver", description="Default participant identity")


class SessionConfig(BaseModel):
    """Defaults for newly created voice sessions."""
    scenario: str = Field(default="driver_support", description="Scripted scenario name")
    language: str = Field(default="hindi", description="Conversation language")
    room_prefix: str = Field(default="ola-support", description="Prefix for generated room names")
    user_label: str = Field(default="Driver", description="Transcript label for user turns")
    bot_label: str = Field(default="Support Bot", description="Transcript label for bot turns")


# ---------------------------------------------------------------------------
# Top-level config
# ---------------------------------------------------------------------------

class DriverSupportConfig(BaseModel):
    """Complete runtime configuration for the driver support assistant."""
    groq: GroqConfig = Field(default_factory=GroqConfig)
    livekit: LiveKitConfig = Field(default_factory=LiveKitConfig)
    session: SessionConfig = Field(default_factory=SessionConfig)
    system_prompt: str = Field(default=DEFAULT_SYSTEM_PROMPT, description="System prompt for the LLM")

    # -- Persistence -----------------------------------------------------------

    @classmethod
    def load(cls, path: str | Path) -> "DriverSupportConfig":
        """Read the JSON config file; a missing, unreadable or invalid file yields defaults."""
        p = Path(path)
        try:
            raw = p.read_text(encoding="utf-8")
        except FileNotFoundError:
            log.info("event=config_defaults reason=missing path=%s", p)
            return cls()
        except OSError as exc:
            log.warning("event=config_defaults reason=unreadable path=%s error=%s", p, exc)
            return cls()
        try:
            config = cls.model_validate_json(raw)
        except ValidationError as exc:
            log.warning("event=config_defaults reason=invalid path=%s errors=%d", p, exc.error_count())
            return cls()
        log.info("event=config_loaded path=%s model=%s", p, config.groq.model)
        return config

    @classmethod
    def from_env(cls) -> "DriverSupportConfig":
        """JSON file named by DRIVER_SUPPORT_CONFIG, then env overrides on top."""
        path = os.getenv("DRIVER_SUPPORT_CONFIG")
        config = cls.load(path) if path else cls()

        patch: dict = {}
        for env_name, section, key in _ENV_OVERRIDES:
            value = os.getenv(env_name)
            if value:
                patch.setdefault(section, {})[key] = value
        return config.merge_patch(patch)

    def save(self, path: str | Path) -> None:
        """Write the config as JSON.

        LiveKit credentials are left out; they are supplied through the
        environment on every start.
        """
        p = Path(path)
        p.parent.mkdir(parents=True, exist_ok=True)
        p.write_text(
            self.model_dump_json(indent=2, exclude_none=True, exclude=_SECRET_FIELDS),
            encoding="utf-8",
        )
        log.info("event=config_saved path=%s", p)

    def merge_patch(self, patch: dict) -> "DriverSupportConfig":
        """New config with `patch` deep-merged over this one, e.g.
            {"groq": {"temperature": 0.2}}
        A masked secret echoed back from public_dump() keeps the current value.
        """
        return DriverSupportConfig.model_validate(_deep_merge(self.model_dump(), patch))

    def public_dump(self) -> dict:
        """Config as served over HTTP, with the LiveKit secret masked."""
        data = self.model_dump()
        if data["livekit"].get("api_secret"):
            data["livekit"]["api_secret"] = _MASK
        return data


def _deep_merge(base: dict, patch: dict) -> dict:
    """Merged copy of `base` with `patch` applied; masked values are skipped."""
    merged = dict(base)
    for key, value in patch.items():
        if value == _MASK:
            continue
        current = merged.get(key)
        if isinstance(current, dict) and isinstance(value, dict):
            merged[key] = _deep_merge(current, value)
        else:
            merged[key] = value
    return merged
