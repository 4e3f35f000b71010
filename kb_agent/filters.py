"""Search filter values consumed by the vector index.

A filter is one of:
- NoFilter: search every embedded article.
- ByChannel(channel_id)
- ByStatus(status)
- ByBoth(channel_id, status): both must match.
- MatchNothing: the caller asked for a channel that does not exist. The search is
  skipped instead of silently widening to all channels.

resolve_filter turns the raw tool/API arguments into one of these.
"""
import logging
from dataclasses import dataclass
from typing import Callable, Optional, Union

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class NoFilter:
    pass


@dataclass(frozen=True)
class ByChannel:
    channel_id: int


@dataclass(frozen=True)
class ByStatus:
    status: int


@dataclass(frozen=True)
class ByBoth:
    channel_id: int
    status: int


@dataclass(frozen=True)
class MatchNothing:
    reason: str


SearchFilter = Union[NoFilter, ByChannel, ByStatus, ByBoth, MatchNothing]


def parse_status(raw: Optional[str]) -> Optional[int]:
    """Parse a status filter as a base-10 integer; None when absent or not numeric."""
    if raw is None:
        return None
    try:
        return int(str(raw).strip())
    except ValueError:
        logger.warning("Ignoring non-numeric status filter %r", raw)
        return None


def resolve_filter(
    channel_slug: Optional[str],
    status: Optional[str],
    channel_lookup: Callable[[str], Optional[int]],
) -> SearchFilter:
    """Build the filter for a search request.

    Args:
        channel_slug: Human-readable channel slug, if the caller restricted by channel.
        status: Status code as text; ignored when it does not parse as an integer.
        channel_lookup: Maps a slug to the channel's numeric id, or None if unknown.

    Returns:
        SearchFilter: The combined filter. An unknown slug, or a lookup failure, yields
        MatchNothing even when a valid status was also supplied.
    """
    status_code = parse_status(status)
    channel_id: Optional[int] = None
    if channel_slug:
        try:
            channel_id = channel_lookup(channel_slug)
        except Exception:
            logger.exception("Channel lookup failed for slug %r", channel_slug)
            return MatchNothing(reason=f"channel lookup failed: {channel_slug}")
        if channel_id is None:
            logger.warning("Channel slug %r not found; no articles will match", channel_slug)
            return MatchNothing(reason=f"unknown channel: {channel_slug}")

    if channel_id is not None and status_code is not None:
        return ByBoth(channel_id=channel_id, status=status_code)
    if channel_id is not None:
        return ByChannel(channel_id=channel_id)
    if status_code is not None:
        return ByStatus(status=status_code)
    return NoFilter()
