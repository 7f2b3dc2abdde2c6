from __future__ import annotations

import pytest

from event_reminders.config import Settings
from event_reminders.sms import StubSmsSender
from event_reminders.store import InMemoryReminderStore

from factories import Seeder


@pytest.fixture()
def store() -> InMemoryReminderStore:
    return InMemoryReminderStore()


@pytest.fixture()
def seed(store: InMemoryReminderStore) -> Seeder:
    return Seeder(store)


@pytest.fixture()
def settings() -> Settings:
    return Settings()


@pytest.fixture()
def sender() -> StubSmsSender:
    return StubSmsSender(enabled=True)
