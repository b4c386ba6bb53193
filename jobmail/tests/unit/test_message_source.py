"""
Test message sources: static in-memory list and local mbox exports.
"""
import mailbox
from email.message import EmailMessage

import pytest

from jobmail.core.email.models import PayloadFormat
from jobmail.core.pipeline.message_source import MboxMessageSource, StaticMessageSource

from conftest import build_mime, ts


def _mime(message_id, subject, date, **headers):
    msg = EmailMessage()
    msg["From"] = headers.pop("sender", "Acme Careers <careers@acme.com>")
    msg["To"] = "me@example.com"
    msg["Subject"] = subject
    msg["Message-ID"] = message_id
    msg["Date"] = date
    for name, value in headers.items():
        msg[name.replace("_", "-")] = value
    msg.set_content(f"Body of {subject}")
    return msg.as_bytes()


@pytest.fixture
def mbox_path(tmp_path):
    path = tmp_path / "export.mbox"
    box = mailbox.mbox(str(path))
    box.add(_mime("<a1@acme.com>", "Application received", "Fri, 01 Mar 2024 09:00:00 +0000", X_GM_THRID="1789"))
    box.add(_mime(
        "<a2@acme.com>", "Re: Application received", "Tue, 05 Mar 2024 09:00:00 +0000",
        References="<root@acme.com> <a1@acme.com>", In_Reply_To="<a1@acme.com>",
    ))
    box.add(_mime("<a3@acme.com>", "Interview invite", "Sun, 10 Mar 2024 09:00:00 +0000", In_Reply_To="<a2@acme.com>"))
    box.add(_mime(
        "<n1@news.com>", "Weekly newsletter", "Sat, 02 Mar 2024 09:00:00 +0000",
        sender="News <news@news.com>",
    ))
    box.flush()
    box.close()
    return str(path)


class TestStaticMessageSource:
    @pytest.fixture
    def source(self, make_message):
        return StaticMessageSource([
            make_message("m2", "Interview invite", "Let's talk", day=5),
            make_message("m1", "Application received", "Thanks", day=1),
            make_message("m3", "Newsletter", "News", sender="news@news.com", day=9),
        ])

    @pytest.mark.asyncio
    async def test_ordered_by_received(self, source):
        messages = await source.fetch_messages()

        assert [m.message_id for m in messages] == ["m1", "m2", "m3"]

    @pytest.mark.asyncio
    async def test_query_matches_subject_or_sender(self, source):
        by_subject = await source.fetch_messages(query="INTERVIEW")
        by_sender = await source.fetch_messages(query="news.com")

        assert [m.message_id for m in by_subject] == ["m2"]
        assert [m.message_id for m in by_sender] == ["m3"]

    @pytest.mark.asyncio
    async def test_date_range(self, source):
        messages = await source.fetch_messages(date_range=(ts(2), ts(6)))

        assert [m.message_id for m in messages] == ["m2"]

    @pytest.mark.asyncio
    async def test_raw_format_prefers_explicit_mapping(self, make_message):
        raw = build_mime("Full", "Full body", message_id="<m1@example.com>")
        source = StaticMessageSource([make_message("m1", "Short", "Short")], raw_formats={"m1": raw})

        assert await source.fetch_raw_format("m1") == raw
        assert source.raw_fetches == ["m1"]

    @pytest.mark.asyncio
    async def test_raw_format_unknown(self, source):
        with pytest.raises(LookupError):
            await source.fetch_raw_format("missing")


class TestMboxMessageSource:
    @pytest.mark.asyncio
    async def test_loads_messages_in_order(self, mbox_path):
        source = MboxMessageSource(mbox_path, account="takeout")

        messages = await source.fetch_messages()

        assert [m.message_id for m in messages] == [
            "<a1@acme.com>", "<n1@news.com>", "<a2@acme.com>", "<a3@acme.com>",
        ]
        assert all(m.account == "takeout" for m in messages)
        assert all(m.payload_format == PayloadFormat.MIME for m in messages)
        assert messages[0].received_at == ts(1)

    @pytest.mark.asyncio
    async def test_conversation_ids(self, mbox_path):
        messages = {m.message_id: m for m in await MboxMessageSource(mbox_path).fetch_messages()}

        assert messages["<a1@acme.com>"].conversation_id == "1789"
        assert messages["<a2@acme.com>"].conversation_id == "<root@acme.com>"
        assert messages["<a3@acme.com>"].conversation_id == "<a2@acme.com>"
        assert messages["<n1@news.com>"].conversation_id == "<n1@news.com>"

    @pytest.mark.asyncio
    async def test_query_and_date_filter(self, mbox_path):
        source = MboxMessageSource(mbox_path)

        messages = await source.fetch_messages(query="application", date_range=(ts(3), None))

        assert [m.message_id for m in messages] == ["<a2@acme.com>"]

    @pytest.mark.asyncio
    async def test_raw_format(self, mbox_path):
        source = MboxMessageSource(mbox_path)

        data = await source.fetch_raw_format("<a3@acme.com>")

        assert b"Interview invite" in data
        with pytest.raises(LookupError):
            await source.fetch_raw_format("<missing@acme.com>")
