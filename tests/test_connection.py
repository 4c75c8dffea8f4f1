"""
Tests for ConnectionManager.

Covers:
- Backoff formula: doubling, cap, reset after a successful open
- Failed opens retried automatically, never raised to the caller
- Close reasons: connection lost (retry), logged out (terminal),
  replaced (raised backoff floor, halt at the limit)
- trigger_login: teardown, state reset, credentials cleared after logout
- Events from superseded connection attempts are ignored
- Self identity capture and inbound classification
- Outbound send, media download and on-demand history fetch; outbound
  errors name the halt reason (logged out, replaced) when there is one
"""
import asyncio

import pytest

from watcher.connection import REPLACED_ATTEMPT_FLOOR, ConnectionManager, compute_backoff
from watcher.errors import AuthInvalidated, NotConnected, SessionReplaced, UnknownTarget
from watcher.models import ConnectionState
from watcher.transport import CloseReason

SELF_PHONE = "41790000001"
SELF_JID = f"{SELF_PHONE}@s.whatsapp.net"
CONTACT_JID = "41790000002@s.whatsapp.net"


async def _open(connection, fake_transport):
    await connection.connect()
    fake_transport.open_session()


class TestBackoff:
    def test_doubles_per_attempt(self):
        assert [compute_backoff(n) for n in range(1, 7)] == [1, 2, 4, 8, 16, 32]

    def test_capped(self):
        assert compute_backoff(7) == 60
        assert compute_backoff(50) == 60

    def test_zero_attempts_uses_initial(self):
        assert compute_backoff(0) == 1

    def test_custom_initial_and_cap(self):
        assert [compute_backoff(n, 0.5, 3) for n in range(1, 5)] == [0.5, 1, 2, 3]

    def test_replaced_floor_delay(self):
        assert compute_backoff(REPLACED_ATTEMPT_FLOOR + 1) == 16


class TestConnectLifecycle:
    @pytest.mark.asyncio
    async def test_open_captures_identity(self, connection, fake_transport):
        await _open(connection, fake_transport)
        status = connection.status
        assert status.state == ConnectionState.CONNECTED
        assert status.connected is True
        assert status.phone_number == SELF_PHONE
        assert status.self_jid == SELF_JID
        assert status.self_lid == "987654321@lid"

    @pytest.mark.asyncio
    async def test_pairing_challenge_surfaces_in_status(self, connection, fake_transport):
        await connection.connect()
        fake_transport.listener.on_pairing("ABCD-1234")
        status = connection.status
        assert status.state == ConnectionState.AWAITING_PAIRING
        assert status.awaiting_pairing is True
        assert status.pairing_code == "ABCD-1234"

        fake_transport.open_session()
        assert connection.status.pairing_code is None

    @pytest.mark.asyncio
    async def test_status_is_a_copy(self, connection, fake_transport):
        await _open(connection, fake_transport)
        connection.status.connected = False
        assert connection.connected is True

    @pytest.mark.asyncio
    async def test_failed_open_does_not_raise(self, connection, fake_transport):
        fake_transport.fail_opens = 1
        await connection.connect()
        status = connection.status
        assert status.state == ConnectionState.DISCONNECTED
        assert status.last_error == "bridge unreachable"
        assert status.reconnect_attempts == 1
        assert connection.last_backoff == 1

    @pytest.mark.asyncio
    async def test_retries_until_open_then_resets(self, fake_transport, credentials, store):
        manager = ConnectionManager(fake_transport, credentials, store,
                                    initial_backoff=0.01, max_backoff=0.02)
        fake_transport.fail_opens = 3
        try:
            await manager.connect()
            await asyncio.sleep(0.3)
            assert fake_transport.opens == 4
            assert manager.status.reconnect_attempts == 3
            # 0.01, 0.02, then capped
            assert manager.last_backoff == 0.02

            fake_transport.open_session()
            assert manager.status.reconnect_attempts == 0

            fake_transport.listener.on_close(CloseReason.CONNECTION_LOST, "eof")
            assert manager.last_backoff == 0.01
        finally:
            await manager.close()

    @pytest.mark.asyncio
    async def test_connection_lost_schedules_reconnect(self, connection, fake_transport):
        await _open(connection, fake_transport)
        fake_transport.listener.on_close(CloseReason.CONNECTION_LOST, "socket closed")
        status = connection.status
        assert status.state == ConnectionState.DISCONNECTED
        assert status.connected is False
        assert status.last_error == "socket closed"
        assert connection.last_backoff == 1

    @pytest.mark.asyncio
    async def test_close_stops_retries(self, connection, fake_transport):
        await _open(connection, fake_transport)
        handle = fake_transport.handle
        await connection.close()
        assert handle.closed
        assert connection.connected is False
        await connection.connect()
        assert fake_transport.opens == 1


class TestLoggedOut:
    @pytest.mark.asyncio
    async def test_logged_out_is_terminal(self, fake_transport, credentials, store):
        manager = ConnectionManager(fake_transport, credentials, store, initial_backoff=0.01)
        try:
            await _open(manager, fake_transport)
            fake_transport.listener.on_close(CloseReason.LOGGED_OUT, "device removed")
            assert manager.status.state == ConnectionState.LOGGED_OUT
            await asyncio.sleep(0.1)
            assert fake_transport.opens == 1
            # Explicit connect() is refused too
            await manager.connect()
            assert fake_transport.opens == 1
        finally:
            await manager.close()

    @pytest.mark.asyncio
    async def test_send_after_logout_raises_auth_invalidated(self, connection, fake_transport):
        await _open(connection, fake_transport)
        fake_transport.listener.on_close(CloseReason.LOGGED_OUT, "device removed")
        with pytest.raises(AuthInvalidated, match="watcher login"):
            await connection.send(SELF_JID, {"text": "hi"})

    @pytest.mark.asyncio
    async def test_trigger_login_after_logout_clears_credentials(self, connection, fake_transport, credentials):
        credentials.save({"me": {"id": SELF_JID}})
        await _open(connection, fake_transport)
        fake_transport.listener.on_close(CloseReason.LOGGED_OUT, "device removed")

        await connection.trigger_login()
        assert not credentials.has_existing_session()
        assert fake_transport.opens == 2
        assert connection.status.state == ConnectionState.CONNECTING

    @pytest.mark.asyncio
    async def test_trigger_login_while_connected_keeps_credentials(self, connection, fake_transport, credentials):
        credentials.save({"me": {"id": SELF_JID}})
        await _open(connection, fake_transport)
        first_handle = fake_transport.handle

        await connection.trigger_login()
        assert first_handle.closed
        assert credentials.has_existing_session()
        status = connection.status
        assert status.connected is False
        assert status.self_jid is None
        assert status.reconnect_attempts == 0

    @pytest.mark.asyncio
    async def test_trigger_login_is_idempotent(self, connection, fake_transport):
        await connection.trigger_login()
        await connection.trigger_login()
        assert fake_transport.opens == 2
        assert connection.status.state == ConnectionState.CONNECTING


class TestReplaced:
    @pytest.mark.asyncio
    async def test_replaced_raises_backoff_floor(self, connection, fake_transport):
        await _open(connection, fake_transport)
        fake_transport.listener.on_close(CloseReason.REPLACED, "conflict")
        status = connection.status
        assert status.replaced_count == 1
        assert status.state == ConnectionState.DISCONNECTED
        assert connection.last_backoff == 16

    @pytest.mark.asyncio
    async def test_replaced_halts_at_limit(self, fake_transport, credentials, store):
        manager = ConnectionManager(fake_transport, credentials, store,
                                    initial_backoff=0.001, max_backoff=0.01, replaced_limit=3)
        try:
            await manager.connect()
            for _ in range(2):
                fake_transport.listener.on_close(CloseReason.REPLACED, "conflict")
                await asyncio.sleep(0.1)
            fake_transport.listener.on_close(CloseReason.REPLACED, "conflict")

            status = manager.status
            assert status.state == ConnectionState.REPLACED
            assert status.replaced_count == 3
            opens = fake_transport.opens
            await asyncio.sleep(0.1)
            assert fake_transport.opens == opens == 3
        finally:
            await manager.close()

    @pytest.mark.asyncio
    async def test_send_after_halt_raises_session_replaced(self, fake_transport, credentials, store):
        manager = ConnectionManager(fake_transport, credentials, store, replaced_limit=1)
        try:
            await _open(manager, fake_transport)
            fake_transport.listener.on_close(CloseReason.REPLACED, "conflict")
            assert manager.status.state == ConnectionState.REPLACED
            with pytest.raises(SessionReplaced):
                await manager.send(SELF_JID, {"text": "hi"})
            with pytest.raises(SessionReplaced):
                await manager.download_media({"key": {}})
        finally:
            await manager.close()

    @pytest.mark.asyncio
    async def test_successful_open_resets_replaced_count(self, fake_transport, credentials, store):
        manager = ConnectionManager(fake_transport, credentials, store, initial_backoff=0.001, max_backoff=0.01)
        try:
            await manager.connect()
            fake_transport.listener.on_close(CloseReason.REPLACED, "conflict")
            await asyncio.sleep(0.1)
            fake_transport.open_session()
            assert manager.status.replaced_count == 0
        finally:
            await manager.close()


class TestSupersededAttempts:
    @pytest.mark.asyncio
    async def test_old_attempt_close_is_ignored(self, connection, fake_transport):
        await _open(connection, fake_transport)
        old_listener = fake_transport.listener
        await connection.trigger_login()

        old_listener.on_close(CloseReason.LOGGED_OUT, "late close from old socket")
        assert connection.status.state == ConnectionState.CONNECTING

    @pytest.mark.asyncio
    async def test_old_attempt_messages_are_ignored(self, connection, fake_transport, raw_message):
        seen = []
        connection.on_contact_message = seen.append
        await _open(connection, fake_transport)
        old_listener = fake_transport.listener
        await connection.trigger_login()
        fake_transport.open_session()

        old_listener.on_message(raw_message())
        assert seen == []


class TestClassification:
    @pytest.mark.asyncio
    async def test_self_by_jid_with_device_suffix(self, connection, fake_transport, raw_message):
        await _open(connection, fake_transport)
        event = connection.classify(raw_message(remote_jid=f"{SELF_PHONE}:7@s.whatsapp.net", text="hi"))
        assert event.is_self is True
        assert event.remote_jid == SELF_JID

    @pytest.mark.asyncio
    async def test_self_by_linked_id(self, connection, fake_transport, raw_message):
        await _open(connection, fake_transport)
        assert connection.classify(raw_message(remote_jid="987654321:2@lid")).is_self is True

    @pytest.mark.asyncio
    async def test_contact_is_not_self(self, connection, fake_transport, raw_message):
        await _open(connection, fake_transport)
        event = connection.classify(raw_message(remote_jid=CONTACT_JID, push_name="Ann"))
        assert event.is_self is False
        assert event.push_name == "Ann"

    @pytest.mark.asyncio
    async def test_extended_text(self, connection, fake_transport, raw_message):
        await _open(connection, fake_transport)
        event = connection.classify(raw_message(content={"extendedTextMessage": {"text": "quoted reply"}}))
        assert event.body == "quoted reply"

    @pytest.mark.asyncio
    async def test_image_with_caption(self, connection, fake_transport, raw_message):
        await _open(connection, fake_transport)
        msg = raw_message(content={"imageMessage": {"caption": "look", "mimetype": "image/png"}})
        event = connection.classify(msg)
        assert event.kind == "image"
        assert event.body == "look"
        assert event.media == msg

    @pytest.mark.asyncio
    async def test_sticker_is_an_image(self, connection, fake_transport, raw_message):
        await _open(connection, fake_transport)
        event = connection.classify(raw_message(content={"stickerMessage": {"mimetype": "image/webp"}}))
        assert event.kind == "image"
        assert event.body == ""

    @pytest.mark.asyncio
    async def test_voice_note(self, connection, fake_transport, raw_message):
        await _open(connection, fake_transport)
        event = connection.classify(raw_message(content={"audioMessage": {"seconds": 7, "ptt": True}}))
        assert event.kind == "audio"
        assert event.body == ""
        assert event.media["message"]["audioMessage"]["ptt"] is True

    @pytest.mark.asyncio
    async def test_media_is_not_serialized(self, connection, fake_transport, raw_message):
        await _open(connection, fake_transport)
        event = connection.classify(raw_message(content={"audioMessage": {"ptt": True}}))
        assert "media" not in event.model_dump()

    @pytest.mark.asyncio
    async def test_bodyless_message_is_dropped(self, connection, fake_transport, raw_message):
        await _open(connection, fake_transport)
        assert connection.classify(raw_message(content={"reactionMessage": {"text": "+1"}})) is None

    @pytest.mark.asyncio
    async def test_timestamp_in_ms(self, connection, fake_transport, raw_message):
        await _open(connection, fake_transport)
        assert connection.classify(raw_message(timestamp=1700000000)).timestamp == 1700000000000

    @pytest.mark.asyncio
    async def test_inbound_routed_to_callbacks(self, connection, fake_transport, raw_message):
        mine, theirs = [], []
        connection.on_self_message = mine.append
        connection.on_contact_message = theirs.append
        await _open(connection, fake_transport)

        fake_transport.listener.on_message(raw_message(remote_jid=SELF_JID, text="note to self"))
        fake_transport.listener.on_message(raw_message(remote_jid=CONTACT_JID, text="hey"))
        assert [e.body for e in mine] == ["note to self"]
        assert [e.body for e in theirs] == ["hey"]

    @pytest.mark.asyncio
    async def test_messages_before_open_are_ignored(self, connection, fake_transport, raw_message):
        seen = []
        connection.on_contact_message = seen.append
        await connection.connect()
        fake_transport.listener.on_message(raw_message())
        assert seen == []

    @pytest.mark.asyncio
    async def test_inbound_messages_become_history_anchors(self, connection, fake_transport, raw_message, store):
        await _open(connection, fake_transport)
        fake_transport.listener.on_message(raw_message(msg_id="A1", content={"reactionMessage": {}}))
        assert store.oldest_anchor(CONTACT_JID)["key"]["id"] == "A1"


class TestOutbound:
    @pytest.mark.asyncio
    async def test_send_returns_transport_id(self, connection, fake_transport):
        await _open(connection, fake_transport)
        msg_id = await connection.send(SELF_JID, {"text": "hi"})
        assert msg_id == "OUT1"
        assert fake_transport.handle.sent == [(SELF_JID, {"text": "hi"})]

    @pytest.mark.asyncio
    async def test_send_when_disconnected_raises(self, connection):
        with pytest.raises(NotConnected):
            await connection.send(SELF_JID, {"text": "hi"})

    @pytest.mark.asyncio
    async def test_download_media(self, connection, fake_transport, raw_message):
        await _open(connection, fake_transport)
        msg = raw_message(content={"imageMessage": {"mimetype": "image/png"}})
        assert await connection.download_media(msg) == fake_transport.handle.media
        assert fake_transport.handle.media_requests == [msg]

    @pytest.mark.asyncio
    async def test_download_media_when_disconnected_raises(self, connection):
        with pytest.raises(NotConnected):
            await connection.download_media({"key": {}})

    @pytest.mark.asyncio
    async def test_on_connected_callbacks(self, connection, fake_transport):
        calls = []
        connection.on_connected.append(lambda: calls.append("up"))
        await _open(connection, fake_transport)
        assert calls == ["up"]


class TestHistory:
    @pytest.mark.asyncio
    async def test_no_anchor_raises(self, connection, fake_transport):
        await _open(connection, fake_transport)
        with pytest.raises(UnknownTarget, match="No anchor"):
            await connection.fetch_history(CONTACT_JID)

    @pytest.mark.asyncio
    async def test_on_demand_sync_resolves_fetch(self, connection, fake_transport, raw_message):
        connection.history_timeout = 5
        await _open(connection, fake_transport)
        fake_transport.listener.on_message(raw_message(msg_id="NEW", timestamp=2000, text="newer"))

        task = asyncio.create_task(connection.fetch_history(CONTACT_JID, count=10))
        await asyncio.sleep(0.01)
        request = fake_transport.handle.history_requests[0]
        assert request["jid"] == CONTACT_JID
        assert request["count"] == 10
        assert request["anchor"]["key"]["id"] == "NEW"
        assert request["anchor"]["timestampMs"] == 2000000

        fake_transport.listener.on_history([raw_message(msg_id="OLD", timestamp=1000, text="older")], "ON_DEMAND")
        messages = await asyncio.wait_for(task, 1)
        assert [m["key"]["id"] for m in messages] == ["OLD", "NEW"]

    @pytest.mark.asyncio
    async def test_timeout_falls_back_to_local_anchors(self, connection, fake_transport, raw_message):
        await _open(connection, fake_transport)
        fake_transport.listener.on_message(raw_message(msg_id="ONLY"))
        messages = await connection.fetch_history(CONTACT_JID)
        assert [m["key"]["id"] for m in messages] == ["ONLY"]

    @pytest.mark.asyncio
    async def test_history_sync_deduplicates(self, connection, fake_transport, raw_message, store):
        await _open(connection, fake_transport)
        msg = raw_message(msg_id="DUP")
        fake_transport.listener.on_history([msg, msg], "INITIAL_BOOTSTRAP")
        assert len(store.history(CONTACT_JID)) == 1

    @pytest.mark.asyncio
    async def test_chats_and_contacts_synced_to_store(self, connection, fake_transport, store):
        await _open(connection, fake_transport)
        fake_transport.listener.on_chats([{"id": CONTACT_JID, "name": "Ann"}, {"id": "x@g.us"}], [])
        fake_transport.listener.on_chats([], ["x@g.us"])
        fake_transport.listener.on_contacts([{"id": CONTACT_JID, "notify": "Annie"}])
        assert set(store.chats) == {CONTACT_JID}
        assert store.contacts[CONTACT_JID]["notify"] == "Annie"
