from pytest import fixture, raises, mark
from tests.chatlog_utils import writer, reader
from datetime import datetime
from ChatlogAccess.DBWrite import ChatlogWriter
from ChatlogAccess.DBRead import ChatlogReader
from ChatlogAccess.errors import ChatlogError, InvalidArgument, NotFound
from ChatlogAccess import Analysis
from ChatlogAccess.Analysis import (
    ReportFolder,
    activity_level,
    topic_summary,
    pick_quotes,
    days_argument,
)
import json

ROOM = "123@chatroom"
NOW = datetime(2024, 3, 3, 12, 0, 0)

MESSAGES = [
    ("2024-03-01 08:00:00", ROOM, "lunch at noon today", ""),
    ("2024-03-01 09:00:00", ROOM, "lunch anyone? I am hungry", ""),
    (
        "2024-03-01 10:00:00",
        ROOM,
        "lunch plans are set, meet by the fountain at twelve",
        "",
    ),
    ("2024-03-01 11:00:00", ROOM, "", "image"),
    ("2024-03-01 12:00:00", "wxid_alice", "ok", ""),
    ("2024-03-02 09:00:00", ROOM, "next day lunch", ""),
]


@fixture
def populated(writer: ChatlogWriter):
    writer.add_record("contacts", {"userName": "wxid_alice", "nickName": "Al"})
    writer.add_record("contacts", {"userName": "wxid_bob", "nickName": "Bobby"})
    writer.add_record("chatrooms", {"name": ROOM, "nickName": "Lunch Club"})
    writer.add_record("sessions", {"userName": ROOM, "nOrder": 1})
    for time, talker, content, media_type in MESSAGES:
        writer.add_record(
            "messages",
            {
                "time": time,
                "talker": talker,
                "sender": "wxid_bob",
                "content": content,
                "mediaType": media_type,
                "mediaKey": "0" * 32 if media_type else "",
            },
        )
    writer.finalize()
    return writer


def test_stats(populated, reader: ChatlogReader):
    assert Analysis.stats(reader, NOW) == {
        "total_sessions": 1,
        "total_contacts": 2,
        "total_chatrooms": 1,
        "recent_messages": 6,
        "generated_at": "2024-03-03 12:00:00",
    }
    assert Analysis.stats(reader, datetime(2025, 1, 1))["recent_messages"] == 0


def test_search(populated, reader: ChatlogReader):
    result = Analysis.search(reader, "lunch", 7, NOW)
    assert result["total_messages"] == 4
    assert list(result["grouped_results"]) == [ROOM]
    first = result["grouped_results"][ROOM][0]
    assert first["content"] == "lunch at noon today"
    assert first["type"] == "text"
    assert first["time"] == int(datetime(2024, 3, 1, 8).timestamp())
    assert Analysis.search(reader, "lunch", 2, NOW)["total_messages"] == 1


def test_search_needs_keyword(populated, reader: ChatlogReader):
    with raises(InvalidArgument):
        Analysis.search(reader, "", 7, NOW)


def test_chatroom_history(populated, reader: ChatlogReader):
    result = Analysis.chatroom_history(reader, ROOM, 30, NOW)
    assert result["stats"] == {
        "total_messages": 5,
        "total_days": 2,
        "start_date": "2024-02-02",
        "end_date": "2024-03-03",
    }
    first_day = result["daily_messages"]["2024-03-01"]
    assert [x["hour"] for x in first_day] == [8, 9, 10, 11]
    assert first_day[3]["type"] == "image"
    assert "talker" not in first_day[0]
    with raises(InvalidArgument):
        Analysis.chatroom_history(reader, "", 30, NOW)


def test_daily_summary(populated, reader: ChatlogReader):
    result = Analysis.daily_summary(reader, "2024-03-01", "", NOW)
    assert result["total_groups"] == 2
    assert result["total_messages"] == 5
    assert result["summaries"][ROOM] == {
        "message_count": 3,
        "topics": ["daily chat"],
        "keywords": ["lunch"],
        "activity_level": "quiet",
    }
    assert result["summaries"]["wxid_alice"]["message_count"] == 1
    only_room = Analysis.daily_summary(reader, "2024-03-01", ROOM, NOW)
    assert list(only_room["summaries"]) == [ROOM]


def test_daily_summary_defaults_to_today(populated, reader: ChatlogReader):
    result = Analysis.daily_summary(reader, None, "", datetime(2024, 3, 2, 18))
    assert result["date"] == "2024-03-02"
    assert result["total_messages"] == 1


def test_bad_date(populated, reader: ChatlogReader):
    with raises(InvalidArgument):
        Analysis.daily_summary(reader, "March 1st", "", NOW)
    with raises(InvalidArgument):
        Analysis.golden_quotes(reader, "2024-02-30", "", NOW)


def test_golden_quotes(populated, reader: ChatlogReader):
    result = Analysis.golden_quotes(reader, "2024-03-01", "", NOW)
    assert result["quotes"] == [
        {"content": "lunch anyone? I am hungry", "index": 2, "length": 25},
        {
            "content": "lunch plans are set, meet by the fountain at twelve",
            "index": 3,
            "length": 51,
        },
    ]
    assert result["total_quotes"] == 2


def test_pick_quotes_is_capped():
    texts = [f"question number {i}?" for i in range(12)]
    quotes = pick_quotes(texts)
    assert len(quotes) == 10
    assert quotes[0]["index"] == 1


def test_pick_quotes_skips_duplicates():
    long_message = "this message is long enough to be picked as filler"
    assert len(pick_quotes([long_message, long_message])) == 1


@mark.parametrize(
    "count, level",
    [(150, "very active"), (50, "active"), (20, "moderate"), (10, "low"), (9, "quiet")],
)
def test_activity_level(count, level):
    assert activity_level(count) == level


def test_topic_summary():
    busy = ["alpha beta gamma delta epsilon zeta"] * 101
    topics, keywords = topic_summary(busy)
    assert topics == ["daily chat", "hot topics", "active group"]
    assert keywords == ["alpha", "beta", "delta", "epsilon", "gamma", "zeta"]
    assert topic_summary(["a a a"]) == (["daily chat"], [])
    assert topic_summary([]) == ([], [])


def test_days_argument():
    assert days_argument("3", 7) == 3
    assert days_argument("abc", 7) == 7
    assert days_argument("-3", 7) == 7
    assert days_argument(None, 30) == 30


@fixture
def report_folder(tmp_path):
    (tmp_path / "chatlog_report_20240101.json").write_text(json.dumps({"n": 1}))
    (tmp_path / "chatlog_report_20240201.json").write_text(json.dumps({"n": 2}))
    (tmp_path / "chatlog_export_20240201").mkdir()
    (tmp_path / "notes.json").write_text("{}")
    return ReportFolder(tmp_path)


def test_latest_report(report_folder: ReportFolder):
    assert report_folder.latest_report() == {"n": 2}


def test_no_reports(tmp_path):
    with raises(NotFound) as e:
        ReportFolder(tmp_path).latest_report()
    assert e.value.status_code == 404


def test_broken_report(tmp_path):
    (tmp_path / "chatlog_report_1.json").write_text("{not json")
    with raises(ChatlogError) as e:
        ReportFolder(tmp_path).latest_report()
    assert e.value.status_code == 500


def test_files(report_folder: ReportFolder):
    files = report_folder.files()
    assert [x["name"] for x in files] == [
        "chatlog_report_20240101.json",
        "chatlog_report_20240201.json",
        "chatlog_export_20240201",
    ]
    assert files[0]["url"] == (
        "/api/v1/analysis/download?file=chatlog_report_20240101.json"
    )
    assert files[0]["size"].endswith(" KB")
    assert files[2]["size"] == "Directory"


@mark.parametrize(
    "name", ["notes.json", "../chatlog_report_1.json", "chatlog_report_missing.json"]
)
def test_only_reports_are_handed_out(report_folder: ReportFolder, name):
    with raises(NotFound):
        report_folder.report(name)


def test_report_and_export_lookup(report_folder: ReportFolder):
    assert report_folder.report("chatlog_report_20240101.json").is_file()
    assert report_folder.export("chatlog_export_20240201").is_dir()
    with raises(NotFound):
        report_folder.export("chatlog_report_20240101.json")
