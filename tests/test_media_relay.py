"""Tests for LiveKit token issuance."""

import jwt
import pytest

from config import LiveKitConfig
from media_relay import LiveKitRelay, RelayUnavailable


def test_unconfigured_relay_is_unavailable():
    relay = LiveKitRelay(LiveKitConfig())
    assert relay.available is False
    with pytest.raises(RelayUnavailable):
        relay.generate_token("room-1")


def test_partial_config_is_unavailable():
    assert not LiveKitRelay(LiveKitConfig(url="wss://x", api_key="k")).available


def test_token_grants_room(livekit_config):
    relay = LiveKitRelay(livekit_config)
    token = relay.generate_token("ola-support-1")

    claims = jwt.decode(
        token, livekit_config.api_secret, algorithms=["HS256"], leeway=10, options={"verify_aud": False},
    )
    assert claims["sub"] == "driver"
    assert claims["video"]["room"] == "ola-support-1"
    assert claims["video"]["roomJoin"] is True
    assert claims["video"]["canPublishData"] is True
