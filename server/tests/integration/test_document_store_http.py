"""
Integration tests for DocumentStore against an in-process fake Firebase.
"""
import asyncio

import pytest

from heater_sync.data_models import LinkState
from heater_sync.document_store import DocumentStore
from heater_sync.exceptions import TransientWriteError, TransportConnectError, WritePermissionError


@pytest.mark.integration
class TestDocumentStoreHTTP:
    """Integration tests for the document store REST client."""

    @pytest.mark.asyncio
    async def test_read_once(self, firebase, document_store, sample_system_document):
        """Test an authenticated one-shot read."""
        fake, _ = firebase
        fake.require_auth = True
        fake.set("system", sample_system_document)

        data = await document_store.read_once("system")

        assert data == sample_system_document
        assert fake.sign_ups == 1
        assert fake.requests[-1] == ("GET", "system", "id-token-1")
        assert document_store.state == LinkState.CONNECTED
        assert document_store.identity.uid == "anon-1"

    @pytest.mark.asyncio
    async def test_read_missing_document(self, document_store):
        assert await document_store.read_once("nothing/here") is None

    @pytest.mark.asyncio
    async def test_concurrent_authentication_shares_sign_in(self, firebase, document_store):
        fake, _ = firebase

        identities = await asyncio.gather(*(document_store.authenticate() for _ in range(3)))

        assert fake.sign_ups == 1
        assert len({identity.id_token for identity in identities}) == 1

    @pytest.mark.asyncio
    async def test_expired_token_is_refreshed(self, firebase, document_store, clock):
        fake, _ = firebase
        await document_store.authenticate()

        clock.state["now"] += 3600
        identity = await document_store.authenticate()

        assert fake.sign_ups == 1
        assert fake.refreshes == 1
        assert identity.id_token == "id-token-refreshed-1"
        assert identity.refresh_token == "refresh-1"

    @pytest.mark.asyncio
    async def test_without_api_key_reads_unauthenticated(self, firebase, sample_sensors_document):
        fake, base_url = firebase
        fake.set("sensors", sample_sensors_document)
        store = DocumentStore(f"{base_url}/db")
        try:
            assert await store.read_once("sensors") == sample_sensors_document
            assert fake.sign_ups == 0
            assert fake.requests[-1] == ("GET", "sensors", None)
        finally:
            await store.close()

    @pytest.mark.asyncio
    async def test_write_round_trip(self, firebase, document_store):
        fake, _ = firebase
        document = {"amEnabled": True, "amScheduledTime": "06:30", "amTemperature": 21.0}

        await document_store.write("control/schedule", document)

        assert fake.get("control/schedule") == document
        assert await document_store.read_once("control") == {"schedule": document}

    @pytest.mark.asyncio
    async def test_write_permission_denied(self, firebase, document_store):
        """Test that rule rejections are distinguishable from transient failures."""
        fake, _ = firebase
        fake.denied_paths.add("control/schedule")

        with pytest.raises(WritePermissionError) as exc_info:
            await document_store.write("control/schedule", {"amEnabled": True})

        assert exc_info.value.status == 401
        assert exc_info.value.path == "control/schedule"
        assert fake.get("control/schedule") is None

    @pytest.mark.asyncio
    async def test_write_transient_failure(self, firebase, document_store):
        fake, _ = firebase
        fake.write_failures["control/target_temperature"] = 1

        with pytest.raises(TransientWriteError) as exc_info:
            await document_store.write("control/target_temperature", 22.0)
        assert exc_info.value.status == 503

        await document_store.write("control/target_temperature", 22.0)
        assert fake.get("control/target_temperature") == 22.0

    @pytest.mark.asyncio
    async def test_read_non_json_body(self, firebase, document_store):
        """Test that an unparseable body is reported as a transport failure."""
        fake, _ = firebase
        fake.raw_bodies["system"] = b"<html>Service temporarily unavailable</html>"

        with pytest.raises(TransportConnectError):
            await document_store.read_once("system")

        assert document_store.state == LinkState.ERROR

    @pytest.mark.asyncio
    async def test_unreachable_store(self):
        """Test that an unreachable store surfaces TransportConnectError."""
        states = []
        store = DocumentStore("http://127.0.0.1:1/db", request_timeout=2.0)
        store.add_connection_callback(states.append)
        try:
            with pytest.raises(TransportConnectError):
                await store.read_once("system")
            with pytest.raises(TransientWriteError):
                await store.write("control/schedule", {})
        finally:
            await store.close()

        assert store.state == LinkState.ERROR
        assert states == [LinkState.ERROR]


@pytest.mark.integration
class TestDocumentStoreWatch:
    """Integration tests for live watches over the event stream."""

    @pytest.mark.asyncio
    async def test_watch_initial_and_updates(self, firebase, document_store, wait_until):
        """Test that a watch delivers the current document and later changes."""
        fake, _ = firebase
        fake.set("control", {"target_temperature": 21.0})
        changes = []

        unsubscribe = document_store.watch("control", changes.append)
        await wait_until(lambda: changes)
        assert changes[0] == {"target_temperature": 21.0}

        await document_store.write("control/schedule", {"amEnabled": True})
        await wait_until(lambda: len(changes) == 2)
        assert changes[-1] == {"target_temperature": 21.0, "schedule": {"amEnabled": True}}

        unsubscribe()
        await document_store.write("control/target_temperature", 23.0)
        await asyncio.sleep(0.1)
        assert len(changes) == 2

    @pytest.mark.asyncio
    async def test_patch_and_keep_alive(self, firebase, document_store, wait_until, sample_sensors_document):
        fake, _ = firebase
        fake.set("sensors", sample_sensors_document)
        changes = []

        document_store.watch("sensors", changes.append)
        await wait_until(lambda: changes and fake.stream_count("sensors") == 1)

        fake.push_raw("sensors", "keep-alive", None)
        fake.push_raw("sensors", "patch", {"path": "/temperature", "data": {"red": 25.0}})
        await wait_until(lambda: len(changes) == 2)

        assert changes[-1]["temperature"] == {"red": 25.0, "blue": 22.5, "green": 23.5}
        assert changes[-1]["timestamp"] == sample_sensors_document["timestamp"]

    @pytest.mark.asyncio
    async def test_malformed_events_do_not_end_watch(self, firebase, document_store, wait_until):
        """Test that bad stream events are dropped and the watch keeps running."""
        fake, _ = firebase
        fake.set("control", {"target_temperature": 21.0})
        changes = []

        document_store.watch("control", changes.append)
        await wait_until(lambda: changes and fake.stream_count("control") == 1)

        fake.push_bytes("control", b"event: put\ndata: \xff\xfe\n\n")
        fake.push_bytes("control", b"event: put\ndata: {not json\n\n")
        fake.push_raw("control", "patch", {"path": "/", "data": 5})
        fake.push_raw("control", "put", {"path": 7, "data": {}})
        fake.push_raw("control", "put", ["not", "an", "object"])
        fake.push_raw("control", "patch", {"path": "/", "data": {"target_temperature": 22.0}})
        await wait_until(lambda: len(changes) == 2)

        assert changes[-1] == {"target_temperature": 22.0}
        assert document_store.state == LinkState.CONNECTED

        await document_store.write("control/target_temperature", 23.0)
        await wait_until(lambda: len(changes) == 3)
        assert changes[-1] == {"target_temperature": 23.0}
        assert fake.stream_count("control") == 1

    @pytest.mark.asyncio
    async def test_cancel_stops_watch(self, firebase, document_store, wait_until):
        fake, _ = firebase
        errors = []
        changes = []
        document_store.add_error_callback(errors.append)

        document_store.watch("control", changes.append)
        await wait_until(lambda: changes and fake.stream_count("control") == 1)

        fake.push_raw("control", "cancel", "Permission denied")
        await wait_until(lambda: errors)

        assert isinstance(errors[0], TransportConnectError)
        assert "cancelled" in str(errors[0])
        await asyncio.sleep(0.1)
        assert fake.sign_ups == 1

    @pytest.mark.asyncio
    async def test_auth_revoked_reauthenticates(self, firebase, document_store, wait_until):
        """Test that a revoked credential triggers a fresh sign-in and a new stream."""
        fake, _ = firebase
        changes = []

        document_store.watch("control", changes.append)
        await wait_until(lambda: changes and fake.stream_count("control") == 1)

        fake.push_raw("control", "auth_revoked", "credential is no longer valid")
        await wait_until(lambda: fake.sign_ups == 2 and len(changes) == 2)

        assert document_store.identity.id_token == "id-token-2"
