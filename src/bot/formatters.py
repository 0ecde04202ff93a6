import re
from typing import Optional

from src.db.models import ContentItem

TELEGRAM_MAX_LENGTH = 4096
TELEGRAM_MAX_CAPTION = 1024

LIVE_STATUS_LABELS = {
    "none": "Uploaded",
    "upcoming": "Upcoming stream",
    "live": "Live now",
    "completed": "Stream ended",
}


def escape_html(text: str) -> str:
    """Escape only necessary HTML special characters for Telegram."""
    # Telegram only requires &, <, > to be escaped
    return text.replace("&", "&amp;").replace("<", "&lt;").replace(">", "&gt;")


def fix_html_tags(text: str) -> str:
    """Balance the tags Telegram parses so a truncated message still renders."""
    for tag in ("b", "i", "u", "s", "code", "pre"):
        open_count = len(re.findall(f"<{tag}>", text, re.IGNORECASE))
        close_count = len(re.findall(f"</{tag}>", text, re.IGNORECASE))

        if open_count > close_count:
            text += f"</{tag}>" * (open_count - close_count)
        elif close_count > open_count:
            for _ in range(close_count - open_count):
                text = re.sub(f"</{tag}>", "", text, count=1, flags=re.IGNORECASE)

    return text


def split_message(text: str, max_length: int = TELEGRAM_MAX_LENGTH) -> list[str]:
    """Split a long message on line boundaries."""
    if len(text) <= max_length:
        return [text]

    parts = []
    current = ""
    for line in text.split("\n"):
        if len(current) + len(line) + 1 <= max_length:
            current += line + "\n"
            continue
        if current:
            parts.append(current.rstrip())
        while len(line) > max_length:
            parts.append(line[:max_length])
            line = line[max_length:]
        current = line + "\n"

    if current.strip():
        parts.append(current.rstrip())
    return parts


def format_new_content(item: ContentItem) -> str:
    label = LIVE_STATUS_LABELS.get(item.live_status, "New content")
    lines = [f"<b>🎬 {label}</b>"]
    if item.channel_name:
        lines.append(f"📺 {escape_html(item.channel_name)}")
    lines.append(f"\n{escape_html(item.title)}")
    if item.published_at:
        lines.append(f"🕒 {item.published_at.strftime('%Y-%m-%d %H:%M UTC')}")
    lines.append(item.url)
    return fix_html_tags("\n".join(lines)[:TELEGRAM_MAX_CAPTION])


def format_stream_status_change(old: ContentItem, new: ContentItem) -> str:
    before = LIVE_STATUS_LABELS.get(old.live_status, old.live_status)
    after = LIVE_STATUS_LABELS.get(new.live_status, new.live_status)
    emoji = "🔴" if new.live_status == "live" else "📡"
    return (
        f"<b>{emoji} {escape_html(new.title)}</b>\n"
        f"{before} → <b>{after}</b>\n"
        f"{new.url}"
    )


def format_critical_gap(gap: dict) -> str:
    lines = [
        "<b>🚨 Missed content risk</b>",
        f"Channel: <code>{escape_html(gap['channel_id'])}</code>",
        f"Success rate (24h): {gap['success_rate']:.1f}% over {gap['checks']} checks",
    ]
    if gap.get("last_check"):
        lines.append(f"Last check: {gap['last_check']}")
    if gap.get("escalated"):
        lines.append("Hourly checks added for the next 6 hours.")
    return "\n".join(lines)


def format_suggestions(channel_id: str, suggestions: list[dict]) -> str:
    lines = [f"<b>💡 Schedule suggestions</b> for <code>{escape_html(channel_id)}</code>"]
    for suggestion in suggestions:
        when = ""
        if suggestion.get("day_of_week"):
            when = f" {suggestion['day_of_week'].title()} {suggestion.get('time_of_day') or ''}".rstrip()
        lines.append(f"• {suggestion['type']}{when}: {escape_html(suggestion['reason'])}")
    return "\n".join(lines)


def format_quota_stats(stats: dict, last_run: Optional[str] = None) -> str:
    """Format the ledger's daily stats."""
    status_emoji = {
        "normal": "🟢",
        "moderate": "🟡",
        "high": "🟠",
        "critical": "🔴",
    }.get(stats["status"], "⚪")
    lines = [
        f"<b>📊 Quota {stats['day']}</b>\n",
        f"Status: {status_emoji} {stats['status']}"
        + (" (locked out)" if stats["locked_out"] else ""),
        f"Used: {stats['used']}/{stats['daily_limit']} ({stats['utilization_percent']}%)",
        f"Emergency: {stats['emergency_used']}/{stats['emergency_allowance']}",
        f"Videos found: {stats['videos_found']}",
        f"Next reset: {stats['next_reset']}",
    ]
    if last_run:
        lines.append(f"Last tick: {last_run}")
    return "\n".join(lines)
