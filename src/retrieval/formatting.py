"""Deterministic display helpers for citations."""

from src.ingestion.schemas import SourceKind


def format_timestamp_display(seconds: float) -> str:
    """Format seconds as [MM:SS] or [HH:MM:SS] for display.

    Args:
        seconds: Offset into the video in seconds.

    Returns:
        Formatted timestamp string like [MM:SS] or [HH:MM:SS].

    Examples:
        >>> format_timestamp_display(125)
        "[02:05]"
        >>> format_timestamp_display(3725.4)
        "[01:02:05]"
    """
    total_seconds = max(int(seconds), 0)
    hours = total_seconds // 3600
    minutes = (total_seconds % 3600) // 60
    secs = total_seconds % 60

    if hours > 0:
        return f"[{hours:02d}:{minutes:02d}:{secs:02d}]"
    return f"[{minutes:02d}:{secs:02d}]"


def format_video_url(
    source_kind: SourceKind, locator: str, timestamp_seconds: float | None = None
) -> str | None:
    """Build a deep link into the source player at a timestamp.

    Uploaded files and Mux assets play through the host's own player, so
    ``None`` is returned for them.

    Examples:
        >>> format_video_url(SourceKind.YOUTUBE, "dQw4w9WgXcQ", 120)
        "https://youtube.com/watch?v=dQw4w9WgXcQ&t=120s"
    """
    seconds = int(timestamp_seconds) if timestamp_seconds and timestamp_seconds > 0 else 0

    match source_kind:
        case SourceKind.YOUTUBE:
            base_url = f"https://youtube.com/watch?v={locator}"
            return f"{base_url}&t={seconds}s" if seconds else base_url
        case SourceKind.LOOM:
            base_url = f"https://www.loom.com/share/{locator}"
            return f"{base_url}?t={seconds}" if seconds else base_url
        case _:
            return None
