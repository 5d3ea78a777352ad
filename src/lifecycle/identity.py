"""Composite resource identity encoding.

A resource's external identity is an ordered tuple of segments (for example
resource group, server and database name) joined into one opaque key that the
caller persists between invocations.

Segments are validated at encode time: a segment containing the delimiter
would make the key ambiguous, so it is rejected rather than escaped.
"""

from __future__ import annotations

from dataclasses import dataclass

from .errors import InvalidSegment, MalformedIdentity

DEFAULT_DELIMITER = ":"


def encode_identity(*segments: str, delimiter: str = DEFAULT_DELIMITER) -> str:
    """Join identity segments into a single key.

    Raises:
        InvalidSegment: If a segment is empty or contains the delimiter.
        ValueError: If no segments are given or the delimiter is empty.
    """
    if not delimiter:
        raise ValueError("delimiter must not be empty")
    if not segments:
        raise ValueError("at least one identity segment is required")

    for segment in segments:
        if not segment or delimiter in segment:
            raise InvalidSegment(segment, delimiter)

    return delimiter.join(segments)


def decode_identity(
    key: str,
    arity: int,
    delimiter: str = DEFAULT_DELIMITER,
) -> tuple[str, ...]:
    """Split an identity key back into exactly ``arity`` segments.

    Raises:
        MalformedIdentity: If the segment count differs from ``arity`` or a
            segment is empty.
    """
    if arity < 1:
        raise ValueError("arity must be at least 1")

    parts = tuple(key.split(delimiter)) if key else ()
    if len(parts) != arity or any(not part for part in parts):
        raise MalformedIdentity(key, arity, len(parts))
    return parts


@dataclass(frozen=True)
class IdentityCodec:
    """Identity layout for one resource kind.

    Attributes:
        names: Segment names in order; the arity is their count.
        delimiter: Reserved separator between segments.
    """

    names: tuple[str, ...]
    delimiter: str = DEFAULT_DELIMITER

    def __post_init__(self) -> None:
        if not self.names:
            raise ValueError("IdentityCodec needs at least one segment name")
        if not self.delimiter:
            raise ValueError("delimiter must not be empty")

    @property
    def arity(self) -> int:
        return len(self.names)

    def encode(self, *segments: str) -> str:
        if len(segments) != self.arity:
            raise ValueError(
                f"expected {self.arity} identity segments ({', '.join(self.names)}), "
                f"got {len(segments)}"
            )
        return encode_identity(*segments, delimiter=self.delimiter)

    def decode(self, key: str) -> tuple[str, ...]:
        try:
            return decode_identity(key, self.arity, self.delimiter)
        except MalformedIdentity as e:
            raise MalformedIdentity(key, self.arity, e.found, self.names) from None

    def decode_named(self, key: str) -> dict[str, str]:
        """Decode a key into a mapping of segment name to value."""
        return dict(zip(self.names, self.decode(key), strict=True))
