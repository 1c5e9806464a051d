import os
from contextlib import asynccontextmanager
from typing import Any, Optional

import structlog
from fastapi import Body, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse

from action_drafts import validate_action_draft
from assistant_client import AssistantClient
from coach_service import CoachService
from config import APP_VERSION, draft_resolver_policy, load_settings, resolver_policy
from db import (
    EquipmentRepository,
    ExerciseRepository,
    PlannedWorkoutRepository,
    SettingsRepository,
    TemplateRepository,
    WorkoutSessionRepository,
    WorkoutSpaceRepository,
)
from draft_executor import DraftExecutor
from equipment import exercise_substitutions, is_exercise_available, missing_equipment_ids
from errors import PlannerError
from exercise_resolver import resolve
from queries import (
    get_exercise_history,
    get_exercise_usage_stats,
    get_most_recent_active_workout_id,
    get_template_with_details,
    get_workout_with_details,
    list_finished_workouts,
    list_recent_sessions,
)
from schema import open_store
from store import Store

logger = structlog.get_logger(__name__)

ERROR_STATUS = {
    "validation": 400,
    "referential": 409,
    "stale_reference": 409,
    "assistant": 502,
}


class PlannerAPI:
    """Local REST endpoints over drafts, the resolver and the query layer."""

    def __init__(
        self,
        db_path: Optional[str] = None,
        yaml_path: str = "settings.yaml",
        *,
        assistant: Optional[AssistantClient] = None,
    ) -> None:
        self.settings = load_settings(yaml_path)
        self.db_path = db_path or self.settings.db_path
        self.assistant = assistant
        self.store: Optional[Store] = None
        self.app = FastAPI(title="Iron Planner", version=APP_VERSION, lifespan=self._lifespan)
        self.app.add_exception_handler(PlannerError, self._planner_error)
        self._setup_routes()

    @asynccontextmanager
    async def _lifespan(self, app: FastAPI):
        await self.open()
        try:
            yield
        finally:
            await self.close()

    async def open(self) -> None:
        self.store = await open_store(self.db_path)
        self.templates = TemplateRepository(self.store)
        self.sessions = WorkoutSessionRepository(self.store)
        self.spaces = WorkoutSpaceRepository(self.store)
        self.exercises = ExerciseRepository(self.store)
        self.equipment = EquipmentRepository(self.store)
        self.planned = PlannedWorkoutRepository(self.store)
        self.user_settings = SettingsRepository(self.store)
        self.executor = DraftExecutor(self.store)
        self.coach = None
        if self.assistant is None and self.settings.assistant_api_key:
            self.assistant = AssistantClient.from_settings(self.settings)
        if self.assistant is not None:
            self.coach = CoachService(
                self.store, self.assistant, policy=draft_resolver_policy(self.settings)
            )
        logger.info("api_store_opened", path=self.db_path)

    async def close(self) -> None:
        if self.store is not None:
            await self.store.close()
            self.store = None

    async def _planner_error(self, request: Request, exc: PlannerError) -> JSONResponse:
        status = ERROR_STATUS.get(exc.kind, 500)
        logger.warning("request_failed", path=request.url.path, kind=exc.kind, error=str(exc))
        content = {"kind": exc.kind, "detail": exc.user_message, "retryable": exc.retryable}
        missing = getattr(exc, "missing", None)
        if missing:
            content["missing"] = missing
        return JSONResponse(status_code=status, content=content)

    def _setup_routes(self) -> None:
        @self.app.get("/health")
        async def health():
            return {"status": "ok", "version": APP_VERSION, "db_path": self.db_path}

        @self.app.post("/resolve")
        async def resolve_exercise(text: str = Body(..., embed=True)):
            exercises = await self.exercises.list_all()
            return resolve(text, exercises, policy=resolver_policy(self.settings)).to_dict()

        @self.app.post("/drafts/validate")
        async def validate_draft(draft: Any = Body(...), default_gym_id: Optional[int] = None):
            result = await validate_action_draft(
                self.store,
                draft,
                default_gym_id=default_gym_id,
                policy=draft_resolver_policy(self.settings),
            )
            return result.to_dict()

        @self.app.post("/drafts/execute")
        async def execute_draft(draft: Any = Body(...), default_gym_id: Optional[int] = None):
            result = await validate_action_draft(
                self.store,
                draft,
                default_gym_id=default_gym_id,
                policy=draft_resolver_policy(self.settings),
            )
            if not result.valid:
                raise HTTPException(status_code=400, detail=result.to_dict())
            done = await self.executor.execute(result)
            return done.to_dict()

        @self.app.post("/coach/messages")
        async def coach_message(
            message: str = Body(...),
            history: Optional[list] = Body(None),
            default_gym_id: Optional[int] = Body(None),
        ):
            if self.coach is None:
                raise HTTPException(status_code=503, detail="assistant not configured")
            turn = await self.coach.run_turn(message, history, default_gym_id=default_gym_id)
            return turn.to_dict()

        @self.app.get("/templates")
        async def list_templates():
            return await self.templates.list()

        @self.app.get("/templates/{template_id}")
        async def get_template(template_id: int):
            template = await get_template_with_details(self.store, template_id)
            if template is None:
                raise HTTPException(status_code=404, detail="template not found")
            return template

        @self.app.post("/templates/{template_id}/start")
        async def start_template(template_id: int, space_id: Optional[int] = None):
            try:
                session_id = await self.sessions.start_from_template(template_id, space_id)
            except ValueError as e:
                raise HTTPException(status_code=404 if "not found" in str(e) else 400, detail=str(e))
            return {"id": session_id}

        @self.app.get("/workouts")
        async def list_workouts(finished: bool = False, limit: int = 10):
            if finished:
                return await list_finished_workouts(self.store)
            return await list_recent_sessions(self.store, limit)

        @self.app.get("/workouts/active")
        async def active_workout():
            return {"id": await get_most_recent_active_workout_id(self.store)}

        @self.app.get("/workouts/{workout_id}")
        async def get_workout(workout_id: int):
            workout = await get_workout_with_details(self.store, workout_id)
            if workout is None:
                raise HTTPException(status_code=404, detail="workout not found")
            return workout

        @self.app.post("/workouts/{workout_id}/finish")
        async def finish_workout(workout_id: int):
            try:
                await self.sessions.finish(workout_id)
            except ValueError as e:
                raise HTTPException(status_code=404, detail=str(e))
            return {"status": "finished"}

        @self.app.get("/exercises")
        async def list_exercises():
            return await self.exercises.list_all()

        @self.app.get("/exercises/usage")
        async def exercise_usage():
            return await get_exercise_usage_stats(self.store)

        @self.app.get("/exercises/{exercise_id}/history")
        async def exercise_history(exercise_id: int, limit: Optional[int] = None):
            return await get_exercise_history(self.store, exercise_id, limit)

        @self.app.get("/exercises/{exercise_id}/availability")
        async def exercise_availability(exercise_id: int, space_id: Optional[int] = None):
            exercise = await self.exercises.get(exercise_id)
            if exercise is None:
                raise HTTPException(status_code=404, detail="exercise not found")
            if space_id is None:
                space = await self.spaces.resolve_active()
            else:
                space = await self.spaces.get(space_id)
                if space is None:
                    raise HTTPException(status_code=404, detail="space not found")
            space_equipment = (space or {}).get("equipment_ids") or []
            equipment = await self.equipment.list_all()
            known = [item["id"] for item in equipment]
            available = is_exercise_available(exercise, space_equipment, known)
            return {
                "exercise_id": exercise_id,
                "space_id": space["id"] if space else None,
                "available": available,
                "missing_equipment_ids": missing_equipment_ids(exercise, space_equipment, known),
                "substitutions": []
                if available
                else exercise_substitutions(
                    exercise, await self.exercises.list_all(), space_equipment, equipment
                ),
            }

        @self.app.delete("/exercises/{exercise_id}")
        async def delete_exercise(exercise_id: int):
            try:
                await self.exercises.delete(exercise_id)
            except ValueError as e:
                raise HTTPException(status_code=404, detail=str(e))
            return {"status": "deleted"}

        @self.app.get("/equipment")
        async def list_equipment():
            return await self.equipment.list_all()

        @self.app.get("/spaces")
        async def list_spaces():
            return await self.spaces.list()

        @self.app.get("/spaces/active")
        async def active_space():
            return await self.spaces.resolve_active()

        @self.app.post("/spaces")
        async def create_space(
            name: str = Body(...),
            equipment_ids: Optional[list[str]] = Body(None),
            description: str = Body(""),
            is_default: bool = Body(False),
        ):
            space_id = await self.spaces.create(
                name, equipment_ids, description=description, is_default=is_default
            )
            return {"id": space_id}

        @self.app.post("/spaces/{space_id}/default")
        async def set_default_space(space_id: int):
            try:
                await self.spaces.set_default(space_id)
            except ValueError as e:
                raise HTTPException(status_code=404, detail=str(e))
            return {"status": "updated"}

        @self.app.get("/planned")
        async def list_planned(start_date: Optional[str] = None, end_date: Optional[str] = None):
            return await self.planned.list(start_date, end_date)

        @self.app.get("/settings")
        async def get_settings():
            return await self.user_settings.get()


def create_app() -> FastAPI:
    """App factory for ``uvicorn rest_api:create_app --factory``."""
    return PlannerAPI(
        db_path=os.environ.get("PLANNER_DB_PATH"),
        yaml_path=os.environ.get("PLANNER_SETTINGS", "settings.yaml"),
    ).app
