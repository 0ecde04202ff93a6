from dataclasses import dataclass
from enum import Enum
from typing import Optional


class ErrorType(Enum):
    QUOTA_EXHAUSTED = "quota_exhausted"
    FETCH_FAILURE = "fetch_failure"
    TIMEOUT = "timeout"
    CACHE_INTEGRITY = "cache_integrity"
    PERSISTENCE = "persistence"
    UNKNOWN = "unknown"


class FetchFailure(Exception):
    """Network or API error raised by a fetcher."""


class PersistenceFailure(Exception):
    """A database operation failed and its transaction was rolled back."""


@dataclass
class CheckError:
    error_type: ErrorType
    message: str
    channel_id: Optional[str] = None
    schedule_id: Optional[int] = None

    def to_admin_message(self) -> str:
        """Format error message for admin notification."""
        emoji_map = {
            ErrorType.QUOTA_EXHAUSTED: "🔑",
            ErrorType.FETCH_FAILURE: "🌐",
            ErrorType.TIMEOUT: "⏱️",
            ErrorType.CACHE_INTEGRITY: "🧊",
            ErrorType.PERSISTENCE: "💾",
            ErrorType.UNKNOWN: "❓",
        }

        title_map = {
            ErrorType.QUOTA_EXHAUSTED: "API quota exhausted",
            ErrorType.FETCH_FAILURE: "Fetch failed",
            ErrorType.TIMEOUT: "Fetch timed out",
            ErrorType.CACHE_INTEGRITY: "Cache integrity failure",
            ErrorType.PERSISTENCE: "Database error",
            ErrorType.UNKNOWN: "Unknown error",
        }

        emoji = emoji_map.get(self.error_type, "❓")
        title = title_map.get(self.error_type, "Error")

        lines = [f"{emoji} <b>Error: {title}</b>"]

        if self.channel_id:
            lines.append(f"Channel: {self.channel_id}")
        if self.schedule_id is not None:
            lines.append(f"Schedule: #{self.schedule_id}")

        lines.append(f"\n{self.message}")

        solution = self._get_solution()
        if solution:
            lines.append(f"\n💡 <b>Next step:</b> {solution}")

        return "\n".join(lines)

    def _get_solution(self) -> str:
        solutions = {
            ErrorType.QUOTA_EXHAUSTED: "The daily quota resets automatically at the next day boundary.",
            ErrorType.FETCH_FAILURE: "The channel will be re-evaluated on the next tick.",
            ErrorType.TIMEOUT: "The API is slow to respond; the check will be retried on the next tick.",
            ErrorType.CACHE_INTEGRITY: "The entry was purged and will be fetched again.",
            ErrorType.PERSISTENCE: "Check the database file and disk space.",
            ErrorType.UNKNOWN: "Check the logs for details.",
        }
        return solutions.get(self.error_type, "")
