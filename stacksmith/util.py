from datetime import datetime, timezone


def utc_now_iso() -> str:
    """Current time as an RFC 3339 string in UTC."""
    return datetime.now(timezone.utc).isoformat(timespec="seconds")
