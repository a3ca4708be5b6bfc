"""Signed, expiring playback tokens."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Mapping, Optional, Union
from urllib.parse import urlencode

from jose import JWTError, jwt

from reelqueue.core.errors import (
    AuthorizationError,
    InvalidSignatureError,
    TokenExpiredError,
    UnknownVideoError,
    ValidationError,
)
from reelqueue.services.catalog import AssetCatalog

logger = logging.getLogger(__name__)

DEFAULT_EXPIRES = "1h"

_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)(ms|h|m|s)")
_UNIT_SECONDS = {"h": 3600.0, "m": 60.0, "s": 1.0, "ms": 0.001}

AttributeValue = Union[bool, int, float, str]


def parse_duration(value: str) -> timedelta:
    """Parse durations such as ``1h``, ``90s`` or ``1h30m``."""
    raw = (value or "").strip()
    if not raw:
        raise ValidationError("duration is required")
    total = 0.0
    pos = 0
    for match in _DURATION_PART.finditer(raw):
        if match.start() != pos:
            break
        total += float(match.group(1)) * _UNIT_SECONDS[match.group(2)]
        pos = match.end()
    if pos != len(raw):
        raise ValidationError(f"invalid duration: {value!r}")
    if total <= 0:
        raise ValidationError(f"duration must be positive: {value!r}")
    return timedelta(seconds=total)


def _format_attribute(value: AttributeValue) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def _check_attributes(attributes: Mapping[str, Any]) -> dict[str, AttributeValue]:
    checked: dict[str, AttributeValue] = {}
    for key, value in attributes.items():
        if not isinstance(value, (bool, int, float, str)):
            raise ValidationError(f"invalid attribute type for {key!r}")
        checked[str(key)] = value
    return checked


@dataclass
class PlaybackToken:
    video_id: str
    token: str
    expires_at: datetime
    attributes: dict[str, AttributeValue] = field(default_factory=dict)

    @property
    def player_url(self) -> str:
        params = [(key, _format_attribute(value)) for key, value in self.attributes.items()]
        params.append(("token", self.token))
        return f"/{self.video_id}?{urlencode(params)}"


class TokenIssuer:
    def __init__(
        self,
        secret: str,
        catalog: AssetCatalog,
        *,
        algorithm: str = "HS256",
        default_expires: str = DEFAULT_EXPIRES,
        max_expires: Optional[timedelta] = None,
    ) -> None:
        if not secret:
            raise ValueError("token secret is not configured")
        self._secret = secret
        self.catalog = catalog
        self.algorithm = algorithm
        self.default_expires = default_expires
        self.max_expires = max_expires

    def issue_token(
        self,
        video_id: str,
        expires_in: Optional[str] = None,
        attributes: Optional[Mapping[str, Any]] = None,
        *,
        now: Optional[datetime] = None,
    ) -> PlaybackToken:
        if not video_id:
            raise ValidationError("id is required")
        duration = parse_duration(expires_in or self.default_expires)
        if self.max_expires is not None and duration > self.max_expires:
            raise ValidationError(f"expires exceeds the maximum of {self.max_expires}")
        checked = _check_attributes(attributes or {})
        if not self.catalog.exists(video_id):
            raise UnknownVideoError(video_id)

        issued_at = now or datetime.now(timezone.utc)
        expires_at = issued_at + duration
        claims = {
            "sub": video_id,
            "iat": int(issued_at.timestamp()),
            "exp": int(expires_at.timestamp()),
            "attrs": checked,
        }
        token = jwt.encode(claims, self._secret, algorithm=self.algorithm)
        logger.info("issued playback token for %s valid until %s", video_id, expires_at.isoformat())
        return PlaybackToken(
            video_id=video_id,
            token=token,
            expires_at=datetime.fromtimestamp(claims["exp"], tz=timezone.utc),
            attributes=checked,
        )

    def verify_token(
        self,
        token: str,
        *,
        video_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> dict[str, Any]:
        """Check signature, then expiry, then (optionally) the bound video id."""
        try:
            # Expiry is checked below against an injectable clock.
            claims = jwt.decode(
                token,
                self._secret,
                algorithms=[self.algorithm],
                options={"verify_exp": False},
            )
        except JWTError as exc:
            raise InvalidSignatureError("token signature is invalid") from exc

        exp = claims.get("exp")
        if not isinstance(exp, int):
            raise InvalidSignatureError("token has no expiry")
        current = now or datetime.now(timezone.utc)
        if current.timestamp() >= exp:
            raise TokenExpiredError("token has expired")

        if video_id is not None and claims.get("sub") != video_id:
            raise AuthorizationError("token was issued for a different video")
        return claims
