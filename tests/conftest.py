import queue

import pytest

from tests.fakes import FakeNetwork, Outbox, fake_media


@pytest.fixture
def network():
    return FakeNetwork()


@pytest.fixture
def outboxes():
    return Outbox(), Outbox()


@pytest.fixture
def media():
    return fake_media()


@pytest.fixture
def gui_q():
    return queue.Queue()
