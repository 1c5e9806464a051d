import os
import sys
import unittest

import requests

sys.path.append(os.path.dirname(os.path.dirname(__file__)))
from assistant_client import AssistantClient, parse_reply
from errors import AssistantError


class FakeResponse:
    def __init__(self, status_code, body=None):
        self.status_code = status_code
        self.body = body

    def json(self):
        if self.body is None:
            raise ValueError("no json")
        return self.body


class FakeSession:
    def __init__(self, response=None, error=None):
        self.response = response
        self.error = error
        self.calls = []

    def post(self, url, json=None, headers=None, timeout=None):
        self.calls.append({"url": url, "json": json, "headers": headers, "timeout": timeout})
        if self.error is not None:
            raise self.error
        return self.response


REPLY = {
    "choices": [
        {
            "message": {
                "content": "Let me check.",
                "tool_calls": [
                    {
                        "id": "call_1",
                        "type": "function",
                        "function": {"name": "search_exercises", "arguments": '{"query": "row"}'},
                    }
                ],
            }
        }
    ]
}


class AssistantClientTest(unittest.TestCase):
    def test_send_posts_chat_completion(self) -> None:
        session = FakeSession(FakeResponse(200, REPLY))
        client = AssistantClient("http://coach.local/v1/", "tiny", api_key="sk-1", timeout=5, session=session)
        reply = client.send([{"role": "user", "content": "hi"}], tools=[{"type": "function"}])
        call = session.calls[0]
        self.assertEqual(call["url"], "http://coach.local/v1/chat/completions")
        self.assertEqual(call["json"]["model"], "tiny")
        self.assertEqual(call["json"]["tools"], [{"type": "function"}])
        self.assertEqual(call["headers"]["Authorization"], "Bearer sk-1")
        self.assertEqual(call["timeout"], 5)
        self.assertEqual(reply.content, "Let me check.")
        self.assertEqual([(c.name, c.id) for c in reply.tool_calls], [("search_exercises", "call_1")])

    def test_no_key_no_tools(self) -> None:
        session = FakeSession(FakeResponse(200, {"choices": [{"message": {"content": None}}]}))
        reply = AssistantClient(session=session).send([])
        self.assertNotIn("Authorization", session.calls[0]["headers"])
        self.assertNotIn("tools", session.calls[0]["json"])
        self.assertEqual(reply.content, "")
        self.assertEqual(reply.tool_calls, [])

    def test_http_error(self) -> None:
        body = {"error": {"code": "rate_limit_exceeded", "message": "slow down"}}
        client = AssistantClient(session=FakeSession(FakeResponse(429, body)))
        with self.assertRaises(AssistantError) as ctx:
            client.send([])
        self.assertEqual(ctx.exception.status, 429)
        self.assertEqual(ctx.exception.code, "rate_limit_exceeded")
        self.assertEqual(ctx.exception.kind, "assistant")

        client = AssistantClient(session=FakeSession(FakeResponse(500)))
        with self.assertRaises(AssistantError) as ctx:
            client.send([])
        self.assertIsNone(ctx.exception.code)

    def test_network_error(self) -> None:
        client = AssistantClient(session=FakeSession(error=requests.ConnectionError("down")))
        with self.assertRaises(AssistantError) as ctx:
            client.send([])
        self.assertEqual(ctx.exception.code, "network")
        self.assertIsNone(ctx.exception.status)

    def test_parse_reply_without_choices(self) -> None:
        with self.assertRaises(AssistantError) as ctx:
            parse_reply({"choices": []})
        self.assertEqual(ctx.exception.code, "empty")


if __name__ == "__main__":
    unittest.main()
