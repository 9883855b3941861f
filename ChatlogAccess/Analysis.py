"""Aggregations over the chat history behind the `/api/v1/analysis/` endpoints.

Everything here works on top of a `ChatlogAccess.DBRead.ChatlogReader` and returns
plain dicts ready to be sent as json. Functions that look at "the last N days" take
the current time as an argument so that they can be pinned down in tests.

Reports are json files that external analysis scripts leave in a reports folder;
`ReportFolder` lists them and hands them out for download.
"""

from __future__ import annotations

import json
from collections import Counter, defaultdict
from datetime import datetime, timedelta
from fnmatch import fnmatch
from os import PathLike
from pathlib import Path
from typing import Final, Union

from ChatlogAccess.DBRead import ChatlogReader, Message
from ChatlogAccess.errors import ChatlogError, InvalidArgument, NotFound
from ChatlogAccess.TimeRange import DB_TIME_FORMAT

DATE_FORMAT: Final = "%Y-%m-%d"
UNKNOWN_TALKER: Final = "unknown"

SEARCH_DAYS: Final = 7
HISTORY_DAYS: Final = 30
STATS_DAYS: Final = 7
SEARCH_LIMIT: Final = 1000
HISTORY_LIMIT: Final = 5000
DAY_LIMIT: Final = 10000

MAX_KEYWORDS: Final = 10
KEYWORD_MIN_COUNT: Final = 3
BUSY_GROUP_MESSAGES: Final = 100

# checked from the top; the first level whose threshold is met wins
ACTIVITY_LEVELS: Final = (
    (100, "very active"),
    (50, "active"),
    (20, "moderate"),
    (10, "low"),
    (0, "quiet"),
)

MAX_QUOTES: Final = 10
QUOTE_CANDIDATE_LENGTH: Final = 10
QUOTE_LENGTH: Final = (15, 200)
FILLER_QUOTE_LENGTH: Final = 30
QUOTE_MARKERS: Final = ("！", "？", "!", "?", "💡", "🌟", "金句", "经典")

REPORT_PATTERN: Final = "chatlog_report_*.json"
EXPORT_PATTERN: Final = "chatlog_export_*"
DOWNLOAD_URL: Final = "/api/v1/analysis/download"


def days_argument(value: Union[str, None], default: int) -> int:
    """reads a `days` query argument; anything that isn't a positive whole number
    falls back to the default."""
    try:
        days = int(value or "")
    except ValueError:
        return default
    return days if days > 0 else default


def day_of(value: Union[str, None], now: datetime) -> tuple[str, datetime, datetime]:
    """returns the date string and the first and last second of the day in `value`,
    which defaults to today."""
    date = value or now.strftime(DATE_FORMAT)
    try:
        start = datetime.strptime(date, DATE_FORMAT)
    except ValueError as e:
        raise InvalidArgument("date", e)
    return date, start, start + timedelta(days=1, seconds=-1)


def sent_at(message: Message) -> datetime:
    return datetime.strptime(message.time, DB_TIME_FORMAT)


def is_text(message: Message) -> bool:
    return not message.media_type and bool(message.content)


def message_summary(message: Message) -> dict:
    return {
        "content": message.content,
        "time": int(sent_at(message).timestamp()),
        "sender": message.sender,
        "talker": message.talker,
        "type": message.media_type or "text",
    }


def stats(reader: ChatlogReader, now: datetime) -> dict:
    recent = reader.get_messages(now - timedelta(days=STATS_DAYS), now)
    return {
        "total_sessions": len(reader.get_sessions()),
        "total_contacts": len(reader.get_contacts()),
        "total_chatrooms": len(reader.get_chatrooms()),
        "recent_messages": len(recent),
        "generated_at": now.strftime(DB_TIME_FORMAT),
    }


def search(reader: ChatlogReader, keyword: str, days: int, now: datetime) -> dict:
    """finds messages from the last `days` days containing `keyword`, grouped by the
    conversation they were sent in."""
    if not keyword:
        raise InvalidArgument("keyword")
    messages = reader.get_messages(
        now - timedelta(days=days), now, keyword=keyword, limit=SEARCH_LIMIT
    )
    grouped = defaultdict(list)
    for message in messages:
        grouped[message.talker or UNKNOWN_TALKER].append(message_summary(message))
    return {
        "keyword": keyword,
        "search_days": days,
        "total_messages": len(messages),
        "grouped_results": dict(grouped),
        "search_time": now.strftime(DB_TIME_FORMAT),
    }


def chatroom_history(
    reader: ChatlogReader, talker: str, days: int, now: datetime
) -> dict:
    """one conversation's messages from the last `days` days, grouped by day."""
    if not talker:
        raise InvalidArgument("talker")
    start = now - timedelta(days=days)
    messages = reader.get_messages(start, now, talker, limit=HISTORY_LIMIT)
    daily = defaultdict(list)
    for message in messages:
        sent = sent_at(message)
        summary = message_summary(message)
        del summary["talker"]
        summary["hour"] = sent.hour
        daily[sent.strftime(DATE_FORMAT)].append(summary)
    return {
        "talker": talker,
        "stats": {
            "total_messages": len(messages),
            "total_days": len(daily),
            "start_date": start.strftime(DATE_FORMAT),
            "end_date": now.strftime(DATE_FORMAT),
        },
        "daily_messages": dict(daily),
        "query_time": now.strftime(DB_TIME_FORMAT),
    }


def activity_level(message_count: int) -> str:
    for threshold, level in ACTIVITY_LEVELS:
        if message_count >= threshold:
            return level
    return ACTIVITY_LEVELS[-1][1]


def topic_summary(contents: list[str]) -> tuple[list[str], list[str]]:
    """picks out the words that come up at least a few times and a rough set of
    topic labels for a day's worth of text messages. returns (topics, keywords);
    keywords are ordered from most to least frequent."""
    counts = Counter(
        word for text in contents for word in text.split() if len(word) > 1
    )
    keywords = [
        word
        for word, count in sorted(counts.items(), key=lambda x: (-x[1], x[0]))
        if count >= KEYWORD_MIN_COUNT
    ][:MAX_KEYWORDS]
    topics = []
    if contents:
        topics.append("daily chat")
        if len(keywords) > 5:
            topics.append("hot topics")
        if len(contents) > BUSY_GROUP_MESSAGES:
            topics.append("active group")
    return topics, keywords


def daily_summary(
    reader: ChatlogReader, date: Union[str, None], talker: str, now: datetime
) -> dict:
    """summarizes each conversation's text messages on one day."""
    date, start, end = day_of(date, now)
    messages = reader.get_messages(start, end, talker, limit=DAY_LIMIT)
    grouped = defaultdict(list)
    for message in filter(is_text, messages):
        grouped[message.talker or UNKNOWN_TALKER].append(message.content)

    summaries = {}
    for talker_name, contents in grouped.items():
        topics, keywords = topic_summary(contents)
        summaries[talker_name] = {
            "message_count": len(contents),
            "topics": topics,
            "keywords": keywords,
            "activity_level": activity_level(len(contents)),
        }
    return {
        "date": date,
        "total_groups": len(grouped),
        "total_messages": len(messages),
        "summaries": summaries,
        "generated_at": now.strftime(DB_TIME_FORMAT),
    }


def pick_quotes(texts: list[str]) -> list[dict]:
    """Picks up to MAX_QUOTES memorable lines out of a list of messages.

    Messages of a reasonable length with an exclamation, a question or one of the
    QUOTE_MARKERS in them come first; if there aren't enough of those, the list is
    topped up with the longer messages in the order they were sent. `index` is each
    quote's 1-based position in `texts`.
    """
    low, high = QUOTE_LENGTH
    quotes = [
        {"content": text, "index": i, "length": len(text)}
        for i, text in enumerate(texts, 1)
        if low < len(text) < high and any(x in text for x in QUOTE_MARKERS)
    ]
    picked = {x["content"] for x in quotes}
    for i, text in enumerate(texts, 1):
        if len(quotes) >= MAX_QUOTES:
            break
        if len(text) > FILLER_QUOTE_LENGTH and text not in picked:
            quotes.append({"content": text, "index": i, "length": len(text)})
            picked.add(text)
    return quotes[:MAX_QUOTES]


def golden_quotes(
    reader: ChatlogReader, date: Union[str, None], talker: str, now: datetime
) -> dict:
    date, start, end = day_of(date, now)
    messages = reader.get_messages(start, end, talker, limit=DAY_LIMIT)
    texts = [
        x.content
        for x in messages
        if is_text(x) and len(x.content) > QUOTE_CANDIDATE_LENGTH
    ]
    quotes = pick_quotes(texts)
    return {
        "date": date,
        "talker": talker or "",
        "total_quotes": len(quotes),
        "quotes": quotes,
        "generated_at": now.strftime(DB_TIME_FORMAT),
    }


class ReportFolder:
    """The folder that analysis reports and exports are left in.

    Reports are json files named like REPORT_PATTERN; exports are folders named
    like EXPORT_PATTERN. Only names that match those patterns and sit directly in
    the folder are ever handed out.

    Attributes:
        path: the folder itself.
    """

    def __init__(self, path: PathLike):
        self.path = Path(path)

    def reports(self) -> list[Path]:
        return sorted(x for x in self.path.glob(REPORT_PATTERN) if x.is_file())

    def exports(self) -> list[Path]:
        return sorted(x for x in self.path.glob(EXPORT_PATTERN) if x.is_dir())

    def latest_report(self) -> dict:
        """the contents of the last report in name order; report names are expected
        to end in a sortable timestamp."""
        reports = self.reports()
        if not reports:
            raise NotFound("No analysis report found")
        try:
            return json.loads(reports[-1].read_text(encoding="utf-8"))
        except OSError as e:
            raise ChatlogError("Failed to read report file", e)
        except ValueError as e:
            raise ChatlogError("Failed to parse report file", e)

    def files(self) -> list[dict]:
        listed = [
            {
                "name": x.name,
                "size": f"{x.stat().st_size / 1024:.2f} KB",
                "type": "JSON Report",
                "url": f"{DOWNLOAD_URL}?file={x.name}",
            }
            for x in self.reports()
        ]
        listed += [
            {
                "name": x.name,
                "size": "Directory",
                "type": "Export Folder",
                "url": f"{DOWNLOAD_URL}?folder={x.name}",
            }
            for x in self.exports()
        ]
        return listed

    def report(self, name: str) -> Path:
        location = self.path / name
        if Path(name).name != name or not fnmatch(name, REPORT_PATTERN):
            raise NotFound("File not found")
        if not location.is_file():
            raise NotFound("File not found")
        return location

    def export(self, name: str) -> Path:
        location = self.path / name
        if Path(name).name != name or not fnmatch(name, EXPORT_PATTERN):
            raise NotFound("Folder not found")
        if not location.is_dir():
            raise NotFound("Folder not found")
        return location
