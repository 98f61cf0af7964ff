"""Unit tests for data models."""

from datetime import datetime, timezone

from mailmirror.models import INBOX_LABEL, Draft, Label, LabelType, Message, MessageRef, RemoteListing


class TestLabel:
    """Test suite for Label model."""

    def test_display_name_title_cases_system_names(self) -> None:
        label = Label(id="CATEGORY_SOCIAL", name="CATEGORY_SOCIAL", label_type=LabelType.SYSTEM)

        assert label.display_name == "Category Social"

    def test_display_name_keeps_user_words(self) -> None:
        label = Label(id="Label_3", name="project   alpha")

        assert label.display_name == "Project Alpha"
        assert label.label_type is LabelType.USER


class TestMessage:
    """Test suite for Message model."""

    def test_received_at_is_utc(self) -> None:
        message = Message(id="m1", thread_id="t1", internal_date=1_700_000_000_000)

        assert message.received_at == datetime(2023, 11, 14, 22, 13, 20, tzinfo=timezone.utc)

    def test_has_label(self) -> None:
        message = Message(id="m1", thread_id="t1", label_ids=[INBOX_LABEL, "WORK"])

        assert message.has_label("WORK")
        assert not message.has_label("SPAM")

    def test_deep_copy_is_independent(self) -> None:
        message = Message(id="m1", thread_id="t1", label_ids=[INBOX_LABEL])
        copy = message.model_copy(deep=True)

        message.label_ids.append("WORK")

        assert copy.label_ids == [INBOX_LABEL]


class TestRemoteListing:
    """Test suite for RemoteListing model."""

    def test_defaults_to_complete(self) -> None:
        listing = RemoteListing(label_id=INBOX_LABEL, refs=[MessageRef(id="a", internal_date=30)])

        assert listing.complete is True
        assert listing.refs[0].is_read is None


class TestDraft:
    """Test suite for Draft model."""

    def test_recipients_span_all_address_fields(self) -> None:
        draft = Draft(to="a@example.com, b@example.com", cc=" ", bcc="c@example.com")

        assert draft.recipients == ["a@example.com", "b@example.com", "c@example.com"]

    def test_empty_draft_has_no_recipients(self) -> None:
        assert Draft().recipients == []
