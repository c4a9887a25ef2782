import pytest

from fakes import FakeAPI, FakeNotifier, FakeTranscoder, make_config
from fanslyrecorder.locks import RecordingLocks
from fanslyrecorder.media_store import MediaStore


@pytest.fixture
def config(tmp_path):
    return make_config(tmp_path)


@pytest.fixture
def locks(config):
    return RecordingLocks(config.state.locks_dir)


@pytest.fixture
def media_store(config):
    return MediaStore(config.state.media_db)


@pytest.fixture
def api():
    return FakeAPI()


@pytest.fixture
def notifier():
    return FakeNotifier()


@pytest.fixture
def transcoder():
    return FakeTranscoder()
