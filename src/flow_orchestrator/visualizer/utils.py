"""Shared utilities for visualizer views."""

from datetime import datetime
from typing import Optional


def format_duration(seconds: float) -> str:
	"""Format a duration for display. e.g. '45s', '2m 3s', '1h 5m'."""
	if seconds < 60.0:
		return f"{seconds:.0f}s"
	if seconds < 3600.0:
		minutes = int(seconds // 60)
		return f"{minutes}m {seconds % 60:.0f}s"
	hours = int(seconds // 3600)
	return f"{hours}h {int(seconds % 3600) // 60}m"


def format_timestamp(iso_str: Optional[str], now: Optional[datetime] = None) -> str:
	"""Format an ISO timestamp as relative time (e.g. '2m ago') or absolute."""
	if not iso_str:
		return "-"
	try:
		dt = datetime.fromisoformat(iso_str)
		delta = (now or datetime.now()) - dt
		total_secs = int(delta.total_seconds())

		if total_secs < 0:
			return iso_str[:19]
		if total_secs < 60:
			return f"{total_secs}s ago"
		if total_secs < 3600:
			return f"{total_secs // 60}m ago"
		if total_secs < 86400:
			return f"{total_secs // 3600}h ago"
		return f"{total_secs // 86400}d ago"
	except (ValueError, TypeError):
		return str(iso_str)[:19]


def elapsed_seconds(start_iso: str, end_iso: Optional[str] = None, now: Optional[datetime] = None) -> Optional[float]:
	"""Seconds between two ISO timestamps (or until now)."""
	try:
		start = datetime.fromisoformat(start_iso)
		end = datetime.fromisoformat(end_iso) if end_iso else (now or datetime.now())
	except (ValueError, TypeError):
		return None
	return max((end - start).total_seconds(), 0.0)
