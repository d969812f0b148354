"""
Unit tests for coordinator-side relaying: handshake forwarding, send
authorization, file relay and the network-locality policy.
"""

import asyncio
import json
import unittest

from fakes import RecordingConnection

from netdrops.config import CoordinatorSettings
from netdrops.protocol.framing import Reassembler, encode_frame, new_file_id
from netdrops.protocol.messages import decode_message
from netdrops.session.presence import PresenceBroadcaster
from netdrops.session.registry import SessionRegistry
from netdrops.transfer.router import Router


class RouterTestCase(unittest.IsolatedAsyncioTestCase):

    settings = CoordinatorSettings(max_concurrent_files=30, request_timeout=60)

    async def asyncSetUp(self):
        self.registry = SessionRegistry()
        PresenceBroadcaster(self.registry)
        self.router = Router(self.registry, self.settings)
        self.conn_a = RecordingConnection()
        self.conn_b = RecordingConnection()
        self.conn_c = RecordingConnection()
        self.a = (await self.registry.register(self.conn_a, "L1")).session_id
        self.b = (await self.registry.register(self.conn_b, "L1")).session_id
        self.c = (await self.registry.register(self.conn_c, "L2")).session_id
        for connection in (self.conn_a, self.conn_b, self.conn_c):
            connection.clear()

    async def asyncTearDown(self):
        self.router.clear()

    def send(self, origin: str, payload: dict) -> None:
        self.router.handle_text(origin, json.dumps(payload))

    def request(self, origin: str, target: str) -> None:
        self.send(origin, {"type": "request", "target": target})

    def respond(self, origin: str, requester: str, accepted: bool) -> None:
        self.send(origin, {
            "type": "response", "data": {"accepted": accepted}, "target": requester,
        })

    def meta(self, origin: str, target: str, file_id: str) -> None:
        self.send(origin, {"type": "meta", "fileId": file_id, "target": target})

    def authorize(self, origin: str, target: str) -> None:
        self.request(origin, target)
        self.respond(target, origin, True)


class TestHandshakeRelay(RouterTestCase):

    async def test_request_forwarded_with_coordinator_identity(self):
        self.send(self.a, {
            "type": "request", "target": self.b,
            "senderSessionId": "forged", "senderNickname": "Mallory",
        })

        [request] = self.conn_b.messages("request")
        self.assertEqual(request["senderSessionId"], self.a)
        self.assertEqual(request["senderNickname"], self.registry.get(self.a).nickname)
        self.assertEqual(self.conn_a.sent, [])

    async def test_request_to_missing_target(self):
        self.request(self.a, "ghost")
        self.assertEqual(self.conn_a.errors(), ["target_unavailable"])
        self.assertEqual(self.router.handshake.pending(), [])

    async def test_request_to_closed_target(self):
        self.conn_b.drop()
        self.request(self.a, self.b)
        self.assertEqual(self.conn_a.errors(), ["target_unavailable"])

    async def test_overlapping_request_is_busy(self):
        self.request(self.a, self.b)
        self.request(self.a, self.b)

        self.assertEqual(self.conn_a.errors(), ["busy"])
        self.assertEqual(len(self.conn_b.messages("request")), 1)

    async def test_rejection_clears_request_and_grants_nothing(self):
        self.request(self.a, self.b)
        self.respond(self.b, self.a, False)

        [response] = self.conn_a.messages("response")
        self.assertFalse(response["data"]["accepted"])
        self.assertEqual(response["senderSessionId"], self.b)
        self.assertEqual(self.router.handshake.pending(), [])
        self.assertEqual(self.router.grants(), [])

        self.meta(self.a, self.b, new_file_id())
        self.assertEqual(self.conn_a.errors(), ["not_authorized"])
        self.assertEqual(self.conn_b.messages("meta"), [])

    async def test_acceptance_grants_one_send(self):
        self.authorize(self.a, self.b)

        [response] = self.conn_a.messages("response")
        self.assertTrue(response["data"]["accepted"])
        self.assertEqual(self.router.handshake.pending(), [])
        [grant] = self.router.grants()
        self.assertEqual((grant.origin, grant.target), (self.a, self.b))

    async def test_response_without_request(self):
        self.respond(self.b, self.a, True)
        self.assertEqual(self.conn_b.errors(), ["protocol_violation"])
        self.assertEqual(self.conn_a.sent, [])
        self.assertEqual(self.router.grants(), [])

    async def test_request_expiry_notifies_both(self):
        router = Router(self.registry, CoordinatorSettings(request_timeout=0.05))
        router.handle_text(self.a, json.dumps({"type": "request", "target": self.b}))

        await asyncio.sleep(0.15)

        self.assertEqual(router.handshake.pending(), [])
        self.assertIn("request_expired", self.conn_a.errors())
        self.assertIn("request_expired", self.conn_b.errors())


class TestFileRelay(RouterTestCase):

    async def test_two_files_arrive_reassembled(self):
        """A requests B, B accepts, A sends 2 files; B rebuilds both."""
        self.authorize(self.a, self.b)
        contents = {new_file_id(): b"first photo", new_file_id(): b"\x00second\xff"}
        ids = list(contents)

        for file_id in ids:
            self.meta(self.a, self.b, file_id)
        for file_id in reversed(ids):
            self.router.handle_binary(self.a, encode_frame(file_id, contents[file_id]))

        reassembler = Reassembler()
        received = {}
        for item in self.conn_b.sent:
            if isinstance(item, str):
                message = decode_message(item)
                if message.type == "meta":
                    self.assertEqual(message.sender_session_id, self.a)
                    reassembler.expect(message)
            else:
                result = reassembler.accept(item)
                received[result.file_id] = result.data
        self.assertEqual(received, contents)
        self.assertEqual(self.conn_a.errors(), [])

    async def test_grant_is_single_use(self):
        self.authorize(self.a, self.b)
        file_id = new_file_id()
        self.meta(self.a, self.b, file_id)
        self.router.handle_binary(self.a, encode_frame(file_id, b"data"))
        self.assertEqual(self.router.grants(), [])

        self.meta(self.a, self.b, new_file_id())
        self.assertEqual(self.conn_a.errors(), ["not_authorized"])

    async def test_first_frame_seals_the_batch(self):
        """An unsent file must not keep the grant open for a second batch."""
        self.authorize(self.a, self.b)
        sent, lost, later = new_file_id(), new_file_id(), new_file_id()
        self.meta(self.a, self.b, sent)
        self.meta(self.a, self.b, lost)
        self.router.handle_binary(self.a, encode_frame(sent, b"one"))

        self.meta(self.a, self.b, later)
        self.router.handle_binary(self.a, encode_frame(later, b"two"))

        self.assertEqual(self.conn_a.errors(), ["not_authorized", "protocol_violation"])
        self.assertEqual(len(self.conn_b.frames()), 1)
        self.assertEqual(len(self.conn_b.messages("meta")), 2)
        [grant] = self.router.grants()
        self.assertTrue(grant.sealed)
        self.assertEqual(grant.pending, {lost})

    async def test_unsent_files_expire_with_the_grant(self):
        router = Router(self.registry, CoordinatorSettings(request_timeout=0.05))
        router.handle_text(self.a, json.dumps({"type": "request", "target": self.b}))
        router.handle_text(self.b, json.dumps({
            "type": "response", "data": {"accepted": True}, "target": self.a,
        }))
        sent, lost = new_file_id(), new_file_id()
        for file_id in (sent, lost):
            router.handle_text(self.a, json.dumps({
                "type": "meta", "fileId": file_id, "target": self.b,
            }))
        router.handle_binary(self.a, encode_frame(sent, b"one"))

        await asyncio.sleep(0.15)

        self.assertEqual(router.grants(), [])
        self.assertEqual(self.conn_a.errors(), ["request_expired"])
        [retraction] = self.conn_b.messages("error")
        self.assertEqual(retraction["code"], "request_expired")
        self.assertEqual(retraction["fileId"], lost)

        router.handle_binary(self.a, encode_frame(lost, b"too late"))
        self.assertEqual(self.conn_a.errors(), ["request_expired", "protocol_violation"])
        self.assertEqual(len(self.conn_b.frames()), 1)
        router.clear()

    async def test_unused_grant_expires(self):
        router = Router(self.registry, CoordinatorSettings(request_timeout=0.05))
        router.handle_text(self.a, json.dumps({"type": "request", "target": self.b}))
        router.handle_text(self.b, json.dumps({
            "type": "response", "data": {"accepted": True}, "target": self.a,
        }))

        await asyncio.sleep(0.15)

        self.assertEqual(router.grants(), [])
        self.assertEqual(self.conn_a.errors(), ["request_expired"])
        self.assertEqual(self.conn_b.errors(), [])
        router.clear()

    async def test_meta_with_malformed_file_id(self):
        self.authorize(self.a, self.b)
        self.conn_b.clear()

        self.meta(self.a, self.b, "abc")
        self.meta(self.a, self.b, "é" * 36)

        self.assertEqual(self.conn_a.errors(), ["protocol_violation"] * 2)
        self.assertEqual(self.conn_b.sent, [])
        [grant] = self.router.grants()
        self.assertEqual(grant.pending, set())

    async def test_request_while_authorized_is_busy(self):
        self.authorize(self.a, self.b)
        file_id = new_file_id()
        self.meta(self.a, self.b, file_id)
        self.conn_b.clear()

        self.request(self.a, self.b)

        self.assertEqual(self.conn_a.errors(), ["busy"])
        self.assertEqual(self.conn_b.messages("request"), [])
        [grant] = self.router.grants()
        self.assertEqual(grant.pending, {file_id})

        self.router.handle_binary(self.a, encode_frame(file_id, b"data"))
        self.assertEqual(self.router.grants(), [])
        self.request(self.a, self.b)
        self.assertEqual(len(self.conn_b.messages("request")), 1)

    async def test_frame_without_meta_is_violation(self):
        self.authorize(self.a, self.b)
        self.conn_b.clear()

        self.router.handle_binary(self.a, encode_frame(new_file_id(), b"sneaky"))

        self.assertEqual(self.conn_a.errors(), ["protocol_violation"])
        self.assertEqual(self.conn_b.sent, [])

    async def test_short_frame_is_violation(self):
        self.router.handle_binary(self.a, b"abc")
        self.assertEqual(self.conn_a.errors(), ["protocol_violation"])

    async def test_meta_cap(self):
        router = Router(self.registry, CoordinatorSettings(max_concurrent_files=2))
        router.handle_text(self.a, json.dumps({"type": "request", "target": self.b}))
        router.handle_text(self.b, json.dumps({
            "type": "response", "data": {"accepted": True}, "target": self.a,
        }))
        for _ in range(3):
            router.handle_text(self.a, json.dumps({
                "type": "meta", "fileId": new_file_id(), "target": self.b,
            }))
        self.assertEqual(self.conn_a.errors(), ["validation_error"])
        router.clear()

    async def test_duplicate_file_id_is_violation(self):
        self.authorize(self.a, self.b)
        file_id = new_file_id()
        self.meta(self.a, self.b, file_id)
        self.meta(self.a, self.b, file_id)
        self.assertEqual(self.conn_a.errors(), ["protocol_violation"])
        self.assertEqual(len(self.conn_b.messages("meta")), 1)

    async def test_locality_mismatch_drops_frame(self):
        """A (L1) and C (L2): the frame is dropped and only A hears about it."""
        self.authorize(self.a, self.c)
        self.conn_c.clear()
        file_id = new_file_id()

        self.meta(self.a, self.c, file_id)
        self.router.handle_binary(self.a, encode_frame(file_id, b"photo"))

        self.assertEqual(self.conn_c.sent, [])
        [error] = self.conn_a.messages("error")
        self.assertEqual(error["code"], "locality_mismatch")
        self.assertEqual(error["fileId"], file_id)
        self.assertEqual(error["target"], self.c)
        self.assertEqual(self.router.grants(), [])

    async def test_frame_to_departed_target(self):
        self.authorize(self.a, self.b)
        file_id = new_file_id()
        self.meta(self.a, self.b, file_id)
        await self.registry.unregister(self.b)
        self.conn_a.clear()

        self.router.handle_binary(self.a, encode_frame(file_id, b"late"))

        self.assertEqual(self.conn_a.errors(), ["protocol_violation"])


class TestMalformedInput(RouterTestCase):

    async def test_garbage_is_reported_not_fatal(self):
        self.router.handle_text(self.a, "{{{")
        self.send(self.a, {"type": "teleport", "target": self.b})
        self.assertEqual(self.conn_a.errors(), ["malformed_message"] * 2)

        self.request(self.a, self.b)
        self.assertEqual(len(self.conn_b.messages("request")), 1)

    async def test_coordinator_only_types_rejected(self):
        self.send(self.a, {"type": "init", "sessionId": "x", "nickname": "y"})
        self.send(self.a, {"type": "userList", "users": []})
        self.assertEqual(self.conn_a.errors(), ["protocol_violation"] * 2)
        self.assertEqual(self.conn_b.sent, [])


class TestDisconnect(RouterTestCase):

    async def test_pending_request_cancelled_and_requester_told(self):
        self.request(self.a, self.b)
        self.conn_a.clear()

        await self.registry.unregister(self.b)

        self.assertEqual(self.router.handshake.pending(), [])
        self.assertEqual(self.conn_a.errors(), ["target_unavailable"])
        [snapshot] = self.conn_a.messages("userList")
        self.assertNotIn(self.b, {u["sessionId"] for u in snapshot["users"]})

    async def test_requester_leaving_tells_target(self):
        self.request(self.a, self.b)
        await self.registry.unregister(self.a)
        self.assertEqual(self.conn_b.errors(), ["target_unavailable"])

    async def test_grants_dropped(self):
        self.authorize(self.a, self.b)
        self.meta(self.a, self.b, new_file_id())
        self.conn_a.clear()

        await self.registry.unregister(self.b)

        self.assertEqual(self.router.grants(), [])
        self.assertEqual(self.conn_a.errors(), ["target_unavailable"])

    async def test_sender_leaving_clears_its_files(self):
        self.authorize(self.a, self.b)
        self.meta(self.a, self.b, new_file_id())
        self.conn_b.clear()

        await self.registry.unregister(self.a)

        self.assertEqual(self.router.grants(), [])
        self.assertEqual(self.conn_b.errors(), [])


if __name__ == "__main__":
    unittest.main()
