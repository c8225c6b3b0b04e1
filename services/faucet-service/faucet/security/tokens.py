"""Utilities for issuing and validating channel adapter JWTs."""

from __future__ import annotations

import argparse
import time
from typing import Any

import jwt

from ..config import get_settings
from ..domain.account import Channel

ANY_CHANNEL = "*"


def issue_adapter_token(adapter: str, channels: list[str]) -> tuple[str, int]:
    """Create a signed JWT authorising an adapter to speak for the given channels.

    Parameters
    ----------
    adapter:
        Adapter name embedded in the `sub` claim, e.g. ``telegram-bot``.
    channels:
        Channel names the adapter may act for; ``*`` grants every channel.

    Returns
    -------
    tuple[str, int]
        A tuple containing the encoded JWT string and its TTL (in seconds).
    """

    for channel in channels:
        if channel != ANY_CHANNEL:
            Channel(channel)
    settings = get_settings()
    now = int(time.time())
    expires_in = settings.jwt_ttl_seconds
    payload: dict[str, Any] = {
        "iss": settings.jwt_issuer,
        "sub": adapter,
        "channels": sorted(set(channels)),
        "iat": now,
        "exp": now + expires_in,
    }
    token = jwt.encode(payload, settings.jwt_secret, algorithm="HS256")
    return token, expires_in


def decode_adapter_token(token: str) -> dict[str, Any]:
    """Decode and verify an adapter JWT returning its payload.

    Raises
    ------
    jwt.PyJWTError
        Propagated when the token is invalid, expired, or signed by another issuer.
    """

    settings = get_settings()
    return jwt.decode(
        token,
        settings.jwt_secret,
        algorithms=["HS256"],
        issuer=settings.jwt_issuer,
        options={"require": ["exp", "sub"]},
    )


def allows_channel(claims: dict[str, Any], channel: Channel | str) -> bool:
    granted = claims.get("channels") or []
    return ANY_CHANNEL in granted or Channel(channel).value in granted


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description="Issue a bearer token for a channel adapter.")
    parser.add_argument("adapter", help="adapter name stored in the sub claim")
    parser.add_argument("channels", nargs="+", help="channels the adapter may act for, or *")
    args = parser.parse_args(argv)
    token, expires_in = issue_adapter_token(args.adapter, args.channels)
    print(token)
    print(f"# expires in {expires_in} seconds")


if __name__ == "__main__":
    main()
