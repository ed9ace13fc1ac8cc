import asyncio
import os
import tempfile
import unittest
from urllib.parse import parse_qs, urlparse

from aiohttp.test_utils import TestClient, TestServer

from card_gateway.cookies import COOKIE_NAME, sign_session_id
from card_gateway.errors import PersistenceError
from card_gateway.http_transport import create_app
from card_gateway.ledger import DELETE_CARD, MAX_QUERY_LIMIT, SEND_CARD, UPLOAD_IMAGE, ActivityRecord
from card_gateway.sessions import Credential, Identity
from tests.fake_webex import BOT_TOKEN, STATE, FakeWebex, make_config

CARD = {"type": "AdaptiveCard", "version": "1.3", "body": [{"type": "TextBlock", "text": "Hello"}]}
EMPTY_DETAILS = {"avatarUrl": "", "isAuthenticated": False, "nickName": "", "isBot": False}


class GatewayHttpTestCase(unittest.IsolatedAsyncioTestCase):
    use_sqlite = True

    async def asyncSetUp(self):
        self.tmpdir = tempfile.TemporaryDirectory()
        db_path = os.path.join(self.tmpdir.name, "gateway.db") if self.use_sqlite else None
        self.fake = FakeWebex()
        self.config = make_config(await self.fake.start())
        self.app = create_app(self.config, db_path=db_path)
        self.client = TestClient(TestServer(self.app))
        await self.client.start_server()

    async def asyncTearDown(self):
        await self.client.close()
        await self.fake.close()
        self.tmpdir.cleanup()

    @property
    def runtime(self):
        return self.app["runtime"]

    async def _login(self, code: str = "good-code"):
        resp = await self.client.get(
            "/callback", params={"code": code, "state": STATE}, allow_redirects=False
        )
        await resp.release()
        return resp

    async def _send(self, room_id: str, room_title: str, card_type: str = "survey"):
        resp = await self.client.post(
            "/card", json={"roomId": room_id, "roomTitle": room_title, "card": CARD, "type": card_type}
        )
        return resp, await resp.json()


class AuthFlowTests(GatewayHttpTestCase):
    async def test_login_redirects_to_authorize_endpoint(self):
        resp = await self.client.get("/login", allow_redirects=False)

        self.assertEqual(resp.status, 302)
        location = urlparse(resp.headers["Location"])
        self.assertTrue(location.path.endswith("/authorize"))
        self.assertEqual(parse_qs(location.query)["state"], [STATE])

    async def test_callback_sets_cookie_and_redirects_to_frontend(self):
        resp = await self._login()

        self.assertEqual(resp.status, 302)
        self.assertEqual(resp.headers["Location"], "http://frontend.test")
        self.assertIn(COOKIE_NAME, resp.cookies)

        details = await (await self.client.get("/details")).json()
        self.assertEqual(
            details,
            {
                "avatarUrl": "https://avatars.example.com/alice",
                "isAuthenticated": True,
                "nickName": "Alice",
                "isBot": False,
            },
        )

    async def test_callback_failures_render_plain_messages(self):
        missing = await self.client.get("/callback", allow_redirects=False)
        forged = await self.client.get(
            "/callback", params={"code": "good-code", "state": "forged"}, allow_redirects=False
        )
        rejected = await self.client.get(
            "/callback", params={"code": "bad-code", "state": STATE}, allow_redirects=False
        )

        self.assertEqual(missing.status, 400)
        self.assertIn("Authorization code missing", await missing.text())
        self.assertEqual(forged.status, 400)
        self.assertIn("tampered", await forged.text())
        self.assertEqual(rejected.status, 502)
        self.assertNotIn("s3cret", await rejected.text())
        for resp in (missing, forged, rejected):
            self.assertNotIn("Location", resp.headers)

    async def test_disallowed_domain_gets_no_session(self):
        resp = await self._login("outsider-code")

        self.assertEqual(resp.status, 403)
        self.assertNotIn(COOKIE_NAME, resp.cookies)
        self.assertEqual(await (await self.client.get("/details")).json(), EMPTY_DETAILS)
        [record] = self.runtime.ledger.list_for("mallory@evilexample.com")
        self.assertFalse(record.success)

    async def test_status_is_empty_when_anonymous(self):
        for path in ("/status", "/details"):
            resp = await self.client.get(path)
            self.assertEqual(resp.status, 200)
            self.assertEqual(await resp.json(), EMPTY_DETAILS)

    async def test_partial_session_is_not_authenticated(self):
        session = self.runtime.sessions.create(Identity("bob@example.com", None, None), Credential("tok"))
        self.client.session.cookie_jar.update_cookies(
            {COOKIE_NAME: sign_session_id(self.config.cookie_secret, session.session_id)}
        )

        self.assertEqual(await (await self.client.get("/details")).json(), EMPTY_DETAILS)

    async def test_tampered_cookie_reads_as_anonymous(self):
        await self._login()
        self.client.session.cookie_jar.clear()
        self.client.session.cookie_jar.update_cookies({COOKIE_NAME: "sid_forged.bad-signature"})

        resp = await self.client.get("/rooms")
        self.assertEqual(resp.status, 401)
        self.assertEqual(await resp.json(), {"message": "You are not authenticated."})

    async def test_logout_destroys_session(self):
        await self._login()
        resp = await self.client.get("/logout", allow_redirects=False)

        self.assertEqual(resp.status, 302)
        self.assertEqual(resp.headers["Location"], "http://frontend.test/")
        self.assertEqual(await (await self.client.get("/details")).json(), EMPTY_DETAILS)
        history = self.runtime.ledger.list_for("alice@example.com")
        self.assertEqual([r.activity for r in history], ["logout", "login"])

    async def test_logout_without_session_is_a_client_error(self):
        resp = await self.client.get("/logout", allow_redirects=False)
        self.assertEqual(resp.status, 400)
        self.assertEqual(await resp.text(), "No session to log out.")


class BotSwitchTests(GatewayHttpTestCase):
    async def test_bot_token_switches_identity(self):
        await self._login()
        resp = await self.client.get(f"/bot/{BOT_TOKEN}")

        self.assertEqual(resp.status, 200)
        self.assertEqual(
            await resp.json(),
            {
                "avatarUrl": "https://avatars.example.com/helper",
                "isAuthenticated": True,
                "nickName": "Helper",
                "isBot": True,
            },
        )
        details = await (await self.client.get("/details")).json()
        self.assertTrue(details["isBot"])
        self.assertEqual(details["nickName"], "Helper")

    async def test_invalid_bot_token_keeps_previous_identity(self):
        await self._login()
        resp = await self.client.get("/bot/not-a-token")

        self.assertEqual(resp.status, 400)
        self.assertEqual(await resp.json(), {"message": "Invalid bot token."})
        details = await (await self.client.get("/details")).json()
        self.assertEqual(details["nickName"], "Alice")
        self.assertFalse(details["isBot"])


class RoomsTests(GatewayHttpTestCase):
    async def test_rooms_require_session(self):
        resp = await self.client.get("/rooms")
        self.assertEqual(resp.status, 401)

    async def test_rooms_respect_max_and_strip_fields(self):
        await self._login()
        rooms = await (await self.client.get("/rooms", params={"max": "2"})).json()

        self.assertEqual(len(rooms), 2)
        for room in rooms:
            self.assertEqual(set(room), {"id", "title", "type"})

    async def test_rooms_return_empty_list_after_two_failures(self):
        await self._login()
        self.fake.room_failures = 2
        resp = await self.client.get("/rooms")

        self.assertEqual(resp.status, 200)
        self.assertEqual(await resp.json(), [])


class CardTests(GatewayHttpTestCase):
    async def test_send_then_delete_recovers_room_metadata(self):
        await self._login()
        resp, payload = await self._send("room-1", "Room 1")
        self.assertEqual(resp.status, 200)
        message_id = payload["id"]

        delete = await self.client.delete(f"/card/{message_id}")
        self.assertEqual(delete.status, 200)
        self.assertEqual(await delete.text(), "")

        [record] = self.runtime.ledger.list_for("alice@example.com", activity=DELETE_CARD)
        self.assertEqual((record.message_id, record.room_id, record.room_title), (message_id, "room-1", "Room 1"))

    async def test_concurrent_sends_keep_room_metadata_apart(self):
        await self._login()
        self.fake.send_delays["room-slow"] = 0.05

        (slow_resp, slow), (fast_resp, fast) = await asyncio.gather(
            self._send("room-slow", "Slow room"), self._send("room-fast", "Fast room")
        )
        self.assertEqual((slow_resp.status, fast_resp.status), (200, 200))
        self.assertNotEqual(slow["id"], fast["id"])

        await asyncio.gather(
            self.client.delete(f"/card/{slow['id']}"), self.client.delete(f"/card/{fast['id']}")
        )

        deletes = {
            record.message_id: (record.room_id, record.room_title)
            for record in self.runtime.ledger.list_for("alice@example.com", activity=DELETE_CARD)
        }
        self.assertEqual(deletes[slow["id"]], ("room-slow", "Slow room"))
        self.assertEqual(deletes[fast["id"]], ("room-fast", "Fast room"))

    async def test_send_failure_is_500_with_upstream_message(self):
        await self._login()
        self.fake.send_failures = 1
        resp, body = await self._send("room-x", "Missing")

        self.assertEqual(resp.status, 500)
        self.assertEqual(body, {"message": "Could not find a room with provided ID."})

    async def test_delete_failure_is_500(self):
        await self._login()
        resp = await self.client.delete("/card/msg-does-not-exist")

        self.assertEqual(resp.status, 500)
        self.assertEqual(await resp.json(), {"message": "The requested resource could not be found."})

    async def test_send_validates_body(self):
        await self._login()
        resp = await self.client.post("/card", json={"card": CARD})
        self.assertEqual(resp.status, 400)
        resp = await self.client.post("/card", data="not json", headers={"Content-Type": "application/json"})
        self.assertEqual(resp.status, 400)

    async def test_card_requires_session(self):
        resp = await self.client.post("/card", json={"roomId": "room-1", "card": CARD})
        self.assertEqual(resp.status, 401)
        self.assertEqual(self.fake.calls, [])


class LedgerQueryTests(GatewayHttpTestCase):
    async def test_history_and_card_listing_are_scoped_and_newest_first(self):
        await self._login()
        for i in range(3):
            await self._send(f"room-{i}", f"Room {i}", card_type=f"t{i}")
        self.runtime.ledger.append(ActivityRecord("someone@example.com", SEND_CARD, True, message_id="x"))

        history = await (await self.client.get("/history", params={"max": "2"})).json()
        cards = await (await self.client.get("/card")).json()

        self.assertEqual(len(history), 2)
        self.assertEqual(set(history[0]), {"activity", "timestamp", "success", "type"})
        self.assertEqual(history[0]["type"], "t2")
        self.assertEqual([card["roomId"] for card in cards], ["room-2", "room-1", "room-0"])
        self.assertNotIn("email", cards[0])

    async def test_oversized_max_is_capped(self):
        await self._login()
        await self._send("room-1", "Room 1")
        huge = "99999999999999999999"

        history = await self.client.get("/history", params={"max": huge})
        cards = await self.client.get("/card", params={"max": huge})

        self.assertEqual(history.status, 200)
        self.assertEqual([entry["activity"] for entry in await history.json()], [SEND_CARD, "login"])
        self.assertEqual(cards.status, 200)
        self.assertEqual([card["roomId"] for card in await cards.json()], ["room-1"])

        seen = []
        original = self.runtime.ledger.list_for

        def recording(email, activity=None, limit=25):
            seen.append(limit)
            return original(email, activity=activity, limit=limit)

        self.runtime.ledger.list_for = recording
        await (await self.client.get("/history", params={"max": "5000"})).release()
        self.assertEqual(seen, [MAX_QUERY_LIMIT])

    async def test_images_list_upload_records(self):
        await self._login()
        self.runtime.ledger.append(
            ActivityRecord("alice@example.com", UPLOAD_IMAGE, True, filename="cat.png", link="https://cdn/cat.png")
        )
        images = await (await self.client.get("/images")).json()

        self.assertEqual(len(images), 1)
        self.assertEqual((images[0]["filename"], images[0]["link"]), ("cat.png", "https://cdn/cat.png"))

    async def test_system_stats(self):
        empty = await self.client.get("/system")
        self.assertEqual(await empty.json(), {"totalUsers": 0, "totalCardsSent": 0})

        await self._login()
        await self._send("room-1", "Room 1")
        await self._send("room-2", "Room 2")
        stats = await (await self.client.get("/system")).json()
        self.assertEqual(stats, {"totalUsers": 1, "totalCardsSent": 2})

    async def test_store_failures_fall_back_to_empty_results(self):
        await self._login()

        def broken(*args, **kwargs):
            raise PersistenceError("down")

        self.runtime.ledger.list_for = broken
        self.runtime.ledger.send_stats = broken

        history = await self.client.get("/history")
        system = await self.client.get("/system")
        self.assertEqual((history.status, await history.json()), (200, []))
        self.assertEqual((system.status, await system.json()), (200, {"totalUsers": 0, "totalCardsSent": 0}))


class InMemoryCardTests(CardTests):
    use_sqlite = False
