import logging

from fanslyrecorder.logger import ColoredFormatter, FileFormatter, get_creator_logger, get_logger


def make_record(name, creator=None):
    record = logging.LogRecord(name, logging.INFO, __file__, 1, "went live", None, None)
    if creator:
        record.creator = creator
    return record


def test_console_format_without_color():
    line = ColoredFormatter(use_color=False).format(make_record("fansly_recorder.monitor", "alice"))
    assert "\033[" not in line
    assert line.endswith("INFO     [alice] went live")


def test_file_format_names_component_and_creator():
    line = FileFormatter().format(make_record("fansly_recorder.recorder", "alice"))
    fields = [part.strip() for part in line.split("|")]
    assert fields[1:] == ["INFO", "recorder", "alice", "went live"]

    root_line = FileFormatter().format(make_record("fansly_recorder"))
    assert [part.strip() for part in root_line.split("|")][2:4] == ["app", "-"]


def test_creator_adapter_keeps_caller_extra():
    adapter = get_creator_logger("alice", "chat")
    assert adapter.logger is get_logger("chat")
    msg, kwargs = adapter.process("hi", {'extra': {'room': 'r1'}})
    assert kwargs['extra'] == {'room': 'r1', 'creator': 'alice'}
