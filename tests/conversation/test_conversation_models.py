"""Tests for conversation/models.py: validation and immutable transitions."""

from datetime import timedelta

import pytest
from pydantic import ValidationError

from conversation.models import Message, MessageMetadata, Session, Settings, Thread, utcnow


class TestSettings:
    def test_defaults(self):
        settings = Settings()
        assert settings.model == "claude-3-5-sonnet-20241022"
        assert settings.temperature == 0.7
        assert settings.max_tokens == 4000
        assert settings.language == "ko"
        assert settings.theme == "auto"
        assert settings.auto_save is True
        assert settings.context_window == 20

    @pytest.mark.parametrize(
        "patch",
        [
            {"temperature": 1.5},
            {"max_tokens": 0},
            {"language": "fr"},
            {"theme": "sepia"},
            {"typing_speed": -1},
            {"context_window": 0},
        ],
    )
    def test_invalid_patch(self, patch):
        settings = Settings()
        with pytest.raises(ValidationError):
            settings.merged(patch)
        assert settings == Settings()

    def test_merged_returns_new_instance(self):
        settings = Settings()
        updated = settings.merged({"temperature": 0.2, "theme": "dark"})
        assert updated.temperature == 0.2
        assert updated.theme == "dark"
        assert settings.temperature == 0.7

    def test_frozen(self):
        with pytest.raises(ValidationError):
            Settings().temperature = 0.1


class TestThread:
    def test_foreign_message_rejected(self):
        with pytest.raises(ValidationError):
            Thread(id="thread-a", messages=(Message(role="user", content="hi", thread_id="thread-b"),))

    def test_updated_before_created_rejected(self):
        now = utcnow()
        with pytest.raises(ValidationError):
            Thread(created_at=now, updated_at=now - timedelta(seconds=1))

    def test_with_messages_advances_updated_at(self):
        thread = Thread()
        message = Message(role="user", content="hi", thread_id=thread.id)
        later = thread.updated_at + timedelta(seconds=5)

        updated = thread.with_messages((message,), at=later)

        assert updated.messages == (message,)
        assert updated.updated_at == later
        assert thread.messages == ()

    def test_find_message(self):
        thread = Thread()
        message = Message(role="user", content="hi", thread_id=thread.id)
        thread = thread.with_messages((message,))
        assert thread.index_of(message.id) == 0
        assert thread.find_message(message.id) == message
        assert thread.find_message("missing") is None


class TestSession:
    def test_dangling_active_thread_rejected(self):
        with pytest.raises(ValidationError):
            Session(active_thread_id="thread-missing")

    def test_with_thread_keeps_insertion_order(self):
        first, second = Thread(title="one"), Thread(title="two")
        session = Session().with_thread(first).with_thread(second, active_thread_id=second.id)
        renamed = session.with_thread(first.model_copy(update={"title": "uno"}))

        assert list(renamed.threads) == [first.id, second.id]
        assert renamed.threads[first.id].title == "uno"
        assert renamed.active_thread == second

    def test_json_round_trip(self):
        thread = Thread(tags=frozenset({"work"}))
        message = Message(
            role="assistant",
            content="hi",
            thread_id=thread.id,
            metadata=MessageMetadata(model="m", tokens=1, original_language="en"),
        )
        session = Session().with_thread(thread.with_messages((message,)), active_thread_id=thread.id)

        restored = Session.model_validate(session.model_dump(mode="json"))

        assert restored == session
        assert restored.active_thread.messages[0].metadata.model_dump()["original_language"] == "en"
