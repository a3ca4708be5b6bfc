"""Load-once registry of named encode profiles."""

from __future__ import annotations

from dataclasses import dataclass
from types import MappingProxyType
from typing import Iterable, Iterator, Mapping

from reelqueue.core.errors import UnknownProfileError, ValidationError
from reelqueue.schemas.config import ProfileConfig


@dataclass(frozen=True)
class EncodeParameters:
    name: str
    width: int
    height: int
    video_bitrate: str
    audio_bitrate: str
    bufsize: str
    crf: int
    container: str = "hls"

    @property
    def resolution(self) -> str:
        return f"{self.width}x{self.height}"

    @property
    def bandwidth(self) -> int:
        """Video bitrate in bits per second, for playlist BANDWIDTH attributes."""
        raw = self.video_bitrate.strip().lower()
        if raw.endswith("k"):
            return int(float(raw[:-1]) * 1000)
        if raw.endswith("m"):
            return int(float(raw[:-1]) * 1_000_000)
        return int(float(raw))


class ProfileRegistry:
    def __init__(self, profiles: Iterable[EncodeParameters]) -> None:
        table: dict[str, EncodeParameters] = {}
        for params in profiles:
            if params.name in table:
                raise ValidationError(f"duplicate profile name: {params.name}")
            table[params.name] = params
        self._profiles: Mapping[str, EncodeParameters] = MappingProxyType(table)

    @classmethod
    def from_config(cls, profiles: Iterable[ProfileConfig]) -> "ProfileRegistry":
        return cls(
            EncodeParameters(
                name=item.name,
                width=item.width,
                height=item.height,
                video_bitrate=item.video_bitrate,
                audio_bitrate=item.audio_bitrate,
                bufsize=item.bufsize,
                crf=item.crf,
            )
            for item in profiles
        )

    def resolve(self, name: str) -> EncodeParameters:
        try:
            return self._profiles[name]
        except KeyError:
            raise UnknownProfileError(name) from None

    def names(self) -> list[str]:
        return list(self._profiles)

    def __contains__(self, name: object) -> bool:
        return name in self._profiles

    def __iter__(self) -> Iterator[EncodeParameters]:
        return iter(self._profiles.values())

    def __len__(self) -> int:
        return len(self._profiles)
