"""
media_relay.py — Driver Support Voice Assistant · LiveKit Token Issuer
======================================================================
Mints LiveKit participant tokens so the browser can relay audio through
a WebRTC room.  The relay is optional: `available` is resolved once at
construction and callers check it instead of probing on every request.
"""

from __future__ import annotations

import logging
from datetime import timedelta

from livekit.api import AccessToken, VideoGrants

from config import LiveKitConfig

log = logging.getLogger("driver_support.media_relay")


class RelayUnavailable(RuntimeError):
    """LiveKit URL / key / secret not configured."""


class TokenGenerationError(RuntimeError):
    """LiveKit SDK refused to build a token."""


class LiveKitRelay:

    def __init__(self, cfg: LiveKitConfig) -> None:
        self.cfg = cfg
        self.available = bool(cfg.url and cfg.api_key and cfg.api_secret)
        log.info("event=media_relay_resolved available=%s url=%s", self.available, cfg.url)

    @property
    def url(self) -> str | None:
        return self.cfg.url

    def generate_token(self, room_name: str, participant: str | None = None) -> str:
        """Scoped JWT allowing `participant` to join, publish and subscribe in `room_name`."""
        if not self.available:
            raise RelayUnavailable("LiveKit is not configured")

        identity = participant or self.cfg.participant_name
        grants = VideoGrants(
            room_join=True,
            room=room_name,
            can_publish=True,
            can_subscribe=True,
            can_publish_data=True,
        )
        try:
            token = (
                AccessToken(api_key=self.cfg.api_key, api_secret=self.cfg.api_secret)
                .with_identity(identity)
                .with_name(identity)
                .with_grants(grants)
                .with_ttl(timedelta(seconds=self.cfg.token_ttl_sec))
                .to_jwt()
            )
        except Exception as exc:
            log.error("event=token_generation_failed room=%s error=%s", room_name, exc)
            raise TokenGenerationError("Token generation failed") from exc

        log.info("event=token_issued room=%s identity=%s", room_name, identity)
        return token
