"""Assistant round-trip for the coach.

A turn sends the conversation to the assistant, answers read-only tool
calls from the store, and extracts at most one action draft from the reply
text or from a ``propose_action_draft`` tool call. The draft is validated
straight away but only written when the caller confirms the turn.
"""
from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass, field
from typing import Any, List, Optional

import structlog

from action_drafts import (
    CONTRACT_VERSION,
    DraftValidation,
    parse_action_draft_message,
    validate_action_draft,
)
from assistant_client import AssistantClient, AssistantReply, ToolCall
from draft_executor import DraftExecutionResult, DraftExecutor
from errors import DraftRejectedError
from exercise_resolver import DRAFT_POLICY, ResolverPolicy, resolve
from queries import get_exercise_history, list_recent_sessions
from store import Store

logger = structlog.get_logger(__name__)

SYSTEM_PROMPT = " ".join(
    [
        "You are a supportive fitness coach. Be concise, practical, and friendly.",
        f"If proposing an action, include a JSON object in a fenced ```json``` block using contractVersion {CONTRACT_VERSION}",
        "with assistantText and an optional actionDraft, or call the propose_action_draft tool.",
        "Action drafts must include kind, confidence, risk, title, summary, and payload.",
        "For workouts and templates the payload holds name, optional gymId and exercises: [{ exerciseId, sets?, notes? }].",
        "For gyms the payload holds name and optional equipmentIds.",
        "Every exercise must use an exerciseId from the candidate list. Never invent exercise ids.",
        "If you cannot map a requested exercise, return needsReview: [{ requestedName, suggestions }] instead of guessing.",
        "Avoid medical advice.",
    ]
)

DRAFT_TOOL_NAME = "propose_action_draft"
MAX_CANDIDATES = 200

TOOLS = [
    {
        "type": "function",
        "function": {
            "name": DRAFT_TOOL_NAME,
            "description": "Propose a workout, template or gym for the user to confirm.",
            "parameters": {
                "type": "object",
                "properties": {"actionDraft": {"type": "object"}},
                "required": ["actionDraft"],
            },
        },
    },
    {
        "type": "function",
        "function": {
            "name": "search_exercises",
            "description": "Find library exercises matching free text.",
            "parameters": {
                "type": "object",
                "properties": {"query": {"type": "string"}},
                "required": ["query"],
            },
        },
    },
    {
        "type": "function",
        "function": {
            "name": "get_recent_sessions",
            "description": "List the most recent workout sessions.",
            "parameters": {
                "type": "object",
                "properties": {"limit": {"type": "integer"}},
            },
        },
    },
    {
        "type": "function",
        "function": {
            "name": "get_exercise_history",
            "description": "Finished sets for one exercise, newest first.",
            "parameters": {
                "type": "object",
                "properties": {
                    "exerciseId": {"type": "integer"},
                    "limit": {"type": "integer"},
                },
                "required": ["exerciseId"],
            },
        },
    },
]


@dataclass
class CoachTurn:
    assistant_text: str
    validation: Optional[DraftValidation] = None
    parse_errors: List[str] = field(default_factory=list)
    tool_events: List[dict] = field(default_factory=list)

    @property
    def has_draft(self) -> bool:
        return self.validation is not None

    def to_dict(self) -> dict:
        return {
            "assistant_text": self.assistant_text,
            "validation": self.validation.to_dict() if self.validation else None,
            "parse_errors": list(self.parse_errors),
            "tool_events": list(self.tool_events),
        }


class CoachService:
    """Runs coach turns against an assistant and the local store."""

    def __init__(
        self,
        store: Store,
        client: AssistantClient,
        policy: ResolverPolicy = DRAFT_POLICY,
        max_tool_rounds: int = 3,
    ) -> None:
        self.store = store
        self.client = client
        self.policy = policy
        self.max_tool_rounds = max_tool_rounds
        self.executor = DraftExecutor(store)

    async def candidate_message(self) -> dict:
        exercises = await self.store.table("exercises").order_by("name")
        lines = [f"{e['id']}: {e.get('name') or ''}" for e in exercises[:MAX_CANDIDATES]]
        return {"role": "system", "content": "Candidate exercises:\n" + "\n".join(lines)}

    async def build_messages(self, user_message: str, history: Optional[List[dict]] = None) -> List[dict]:
        messages = [{"role": "system", "content": SYSTEM_PROMPT}, await self.candidate_message()]
        messages.extend(history or [])
        messages.append({"role": "user", "content": user_message})
        return messages

    async def _call_read_tool(self, call: ToolCall, args: dict) -> Any:
        if call.name == "search_exercises":
            exercises = await self.store.table("exercises").to_list()
            return resolve(str(args.get("query", "")), exercises, policy=self.policy).to_dict()
        if call.name == "get_recent_sessions":
            return await list_recent_sessions(self.store, int(args.get("limit") or 10))
        if call.name == "get_exercise_history":
            return await get_exercise_history(
                self.store, int(args["exerciseId"]), args.get("limit")
            )
        raise KeyError(call.name)

    async def _tool_result(self, call: ToolCall) -> dict:
        try:
            args = json.loads(call.arguments or "{}")
            result = {"status": "success", "result": await self._call_read_tool(call, args)}
        except KeyError as e:
            result = {"status": "error", "error": f"Unknown tool or argument: {e}"}
        except (ValueError, TypeError) as e:
            result = {"status": "error", "error": str(e)}
        return {
            "role": "tool",
            "tool_call_id": call.id,
            "content": json.dumps(result, default=str),
        }

    async def _send(self, messages: List[dict]) -> AssistantReply:
        return await asyncio.to_thread(self.client.send, messages, TOOLS)

    async def run_turn(
        self,
        user_message: str,
        history: Optional[List[dict]] = None,
        default_gym_id: Optional[int] = None,
    ) -> CoachTurn:
        messages = await self.build_messages(user_message, history)
        events: List[dict] = []
        reply = await self._send(messages)
        rounds = 0
        while rounds < self.max_tool_rounds:
            reads = [c for c in reply.tool_calls if c.name != DRAFT_TOOL_NAME]
            if not reads or any(c.name == DRAFT_TOOL_NAME for c in reply.tool_calls):
                break
            messages.append(
                {
                    "role": "assistant",
                    "content": reply.content or None,
                    "tool_calls": [
                        {
                            "id": c.id,
                            "type": "function",
                            "function": {"name": c.name, "arguments": c.arguments},
                        }
                        for c in reads
                    ],
                }
            )
            for call in reads:
                result = await self._tool_result(call)
                events.append({"name": call.name, "status": json.loads(result["content"])["status"]})
                messages.append(result)
            reply = await self._send(messages)
            rounds += 1
        turn, raw = self.extract_draft(reply)
        turn.tool_events = events
        if raw is not None:
            turn.validation = await validate_action_draft(
                self.store, raw, default_gym_id=default_gym_id, policy=self.policy
            )
            logger.info(
                "coach_draft_proposed",
                valid=turn.validation.valid,
                errors=len(turn.validation.errors),
                needs_review=len(turn.validation.needs_review),
            )
        return turn

    def extract_draft(self, reply: AssistantReply) -> tuple[CoachTurn, Any]:
        """Split a reply into its text and the raw, unvalidated draft."""
        parsed = parse_action_draft_message(reply.content)
        turn = CoachTurn(parsed.assistant_text, parse_errors=list(parsed.parse_errors))
        raw = parsed.action_draft
        for call in reply.tool_calls:
            if call.name != DRAFT_TOOL_NAME:
                continue
            try:
                args = json.loads(call.arguments or "{}")
            except json.JSONDecodeError:
                turn.parse_errors.append("Unable to parse action draft JSON.")
                continue
            raw = args.get("actionDraft", args) if isinstance(args, dict) else args
            break
        return turn, raw

    async def confirm(self, turn: CoachTurn) -> DraftExecutionResult:
        if turn.validation is None:
            raise DraftRejectedError("no action draft to confirm")
        return await self.executor.execute(turn.validation)
