"""FastAPI application."""

import json
import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any

from fastapi import Body, FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from cloudforge.jobs import JobRunner, JobStatusStore
from cloudforge.persistence import DatabaseConfig, PersistenceAdapter, create_adapter, project
from cloudforge.settings import CloudSettings
from cloudforge.triggers import (
    CallerIdentity,
    CloudError,
    EventKind,
    InvocationPipeline,
    NormalizedError,
    TriggerRegistry,
    TriggerService,
)
from cloudforge.triggers.loader import load_cloud_module

logger = logging.getLogger(__name__)

MASTER_KEY_HEADER = "X-Cloudforge-Master-Key"
USER_ID_HEADER = "X-Cloudforge-User-Id"
INSTALLATION_ID_HEADER = "X-Cloudforge-Installation-Id"
JOB_STATUS_HEADER = "X-Cloudforge-Job-Status-Id"


class FunctionResponse(BaseModel):
    """Response body for function calls."""
    result: Any = None


class JobStartResponse(BaseModel):
    """Response body for job starts."""
    jobStatusId: str


def _error_response(error: NormalizedError, status_code: int = 400) -> JSONResponse:
    return JSONResponse(status_code=status_code, content=error.to_dict())


def get_caller(request: Request) -> CallerIdentity:
    """Derive the caller identity from request headers."""
    settings: CloudSettings = request.app.state.settings
    supplied_key = request.headers.get(MASTER_KEY_HEADER)
    is_master = bool(settings.master_key) and supplied_key == settings.master_key
    return CallerIdentity(
        user_id=request.headers.get(USER_ID_HEADER),
        is_master=is_master,
        installation_id=request.headers.get(INSTALLATION_ID_HEADER),
        ip=request.client.host if request.client else None,
    )


def _require_master(caller: CallerIdentity) -> None:
    if not caller.is_master:
        raise HTTPException(403, "unauthorized: master key is required")


def create_app(
    registry: TriggerRegistry | None = None,
    settings: CloudSettings | None = None,
    adapter: PersistenceAdapter | None = None,
) -> FastAPI:
    """Build the API.

    Args:
        registry: Pre-populated registry; when omitted a fresh one is
            created and the configured cloud module is loaded into it
        settings: Runtime settings; loaded from YAML/env when omitted
        adapter: Persistence adapter; created from DATABASE_URL /
            CLOUDFORGE_DB_PATH when omitted
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Initialize on startup, cleanup on shutdown."""
        app_settings = settings or CloudSettings.load()
        app.state.settings = app_settings

        app_registry = registry
        if app_registry is None:
            app_registry = TriggerRegistry()
            if app_settings.cloud_module:
                load_cloud_module(app_registry, app_settings.cloud_module)
        app.state.registry = app_registry

        db = adapter
        if db is None:
            cwd = Path.cwd()
            base_path = cwd.parent if cwd.name == "backend" else cwd
            db_config = DatabaseConfig.from_env(base_path)
            db_config.ensure_directory()
            db = create_adapter(db_config)
        db.connect()
        app.state.db = db

        store = JobStatusStore(app_settings.job_store_url) if app_settings.job_store_url else None
        pipeline = InvocationPipeline(app_settings)
        app.state.pipeline = pipeline
        app.state.triggers = TriggerService(app_registry, pipeline)
        app.state.jobs = JobRunner(app_registry, pipeline, store=store)

        yield

        # Cleanup
        await pipeline.drain(timeout=5)
        db.close()
        if store:
            store.close()

    app = FastAPI(title="CloudForge API", lifespan=lifespan)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["http://localhost:5173"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # --- Functions ---

    @app.post("/functions/{name}")
    async def call_function(
        name: str,
        request: Request,
        params: dict[str, Any] | None = Body(default=None),
    ):
        """Invoke a cloud function."""
        caller = get_caller(request)
        result = await request.app.state.triggers.call_function(
            name, params or {}, caller, headers=dict(request.headers)
        )
        if not result.ok:
            return _error_response(result.error)
        return FunctionResponse(result=result.value)

    # --- Jobs ---

    @app.post("/jobs/{name}")
    async def start_job(
        name: str,
        request: Request,
        params: dict[str, Any] | None = Body(default=None),
    ):
        """Start a background job (master only)."""
        caller = get_caller(request)
        _require_master(caller)
        try:
            run_id = request.app.state.jobs.start(
                name, params or {}, caller, source="api", headers=dict(request.headers)
            )
        except CloudError as e:
            return _error_response(e.to_normalized())
        return JSONResponse(
            status_code=202,
            content=JobStartResponse(jobStatusId=run_id).model_dump(),
            headers={JOB_STATUS_HEADER: run_id},
        )

    @app.get("/jobs/status")
    async def list_job_runs(request: Request, jobName: str | None = None) -> dict[str, Any]:
        """List job runs, newest first (master only)."""
        _require_master(get_caller(request))
        runs = request.app.state.jobs.list_runs(jobName)
        return {"results": [run.to_dict() for run in runs]}

    @app.get("/jobs/status/{run_id}")
    async def get_job_status(run_id: str, request: Request) -> dict[str, Any]:
        """Get a job run's status and progress log (master only)."""
        _require_master(get_caller(request))
        run = request.app.state.jobs.status(run_id)
        if run is None:
            raise HTTPException(404, "Job run not found")
        return run.to_dict()

    # --- Classes ---

    @app.post("/classes/{class_name}")
    async def create_object(
        class_name: str,
        request: Request,
        data: dict[str, Any] = Body(...),
    ):
        """Create an object, running beforeSave/afterSave."""
        db: PersistenceAdapter = request.app.state.db
        outcome = await request.app.state.triggers.run_guarded_write(
            class_name,
            data,
            get_caller(request),
            write=lambda obj: db.create(class_name, obj),
            headers=dict(request.headers),
        )
        if outcome.error:
            return _error_response(outcome.error)
        return JSONResponse(status_code=201, content={"data": outcome.object})

    @app.put("/classes/{class_name}/{object_id}")
    async def update_object(
        class_name: str,
        object_id: str,
        request: Request,
        data: dict[str, Any] = Body(...),
    ):
        """Update an object, running beforeSave/afterSave."""
        db: PersistenceAdapter = request.app.state.db
        original = db.get(class_name, object_id)
        if not original:
            raise HTTPException(404, "Object not found")

        outcome = await request.app.state.triggers.run_guarded_write(
            class_name,
            {**original, **data},
            get_caller(request),
            write=lambda obj: db.update(class_name, object_id, obj),
            original=original,
            headers=dict(request.headers),
        )
        if outcome.error:
            return _error_response(outcome.error)
        return {"data": outcome.object}

    @app.delete("/classes/{class_name}/{object_id}")
    async def delete_object(class_name: str, object_id: str, request: Request):
        """Delete an object, running beforeDelete/afterDelete."""
        db: PersistenceAdapter = request.app.state.db
        existing = db.get(class_name, object_id)
        if not existing:
            raise HTTPException(404, "Object not found")

        outcome = await request.app.state.triggers.run_guarded_delete(
            class_name,
            existing,
            get_caller(request),
            delete=lambda obj: db.delete(class_name, object_id),
            headers=dict(request.headers),
        )
        if outcome.error:
            return _error_response(outcome.error)
        return {}

    async def _find(
        request: Request, class_name: str, query: dict[str, Any]
    ) -> list[dict[str, Any]] | JSONResponse:
        db: PersistenceAdapter = request.app.state.db
        triggers: TriggerService = request.app.state.triggers
        caller = get_caller(request)
        headers = dict(request.headers)

        before = await triggers.run_before_find(class_name, query, caller, headers)
        if not before.ok:
            return _error_response(before.error)
        effective = before.value
        keys = effective.get("keys")

        # The afterFind hook sees the fields it declared even when the
        # client asked for fewer
        fetch_keys = keys
        hook = triggers.registry.lookup(class_name, EventKind.AFTER_FIND)
        if keys is not None and hook is not None and hook.options.fields:
            fetch_keys = list(dict.fromkeys([*keys, *hook.options.fields]))

        try:
            objects = db.find(
                class_name,
                where=effective.get("where"),
                order=effective.get("order"),
                limit=effective.get("limit"),
                skip=effective.get("skip", 0),
                keys=fetch_keys,
            )
        except ValueError as e:
            raise HTTPException(400, str(e))

        after = await triggers.run_after_find(class_name, objects, caller, headers)
        if not after.ok:
            return _error_response(after.error)
        if keys is None:
            return after.value
        return [project(obj, keys) for obj in after.value]

    @app.get("/classes/{class_name}/{object_id}")
    async def get_object(class_name: str, object_id: str, request: Request):
        """Fetch one object (runs the find hooks)."""
        found = await _find(request, class_name, {"where": {"objectId": object_id}, "limit": 1})
        if isinstance(found, JSONResponse):
            return found
        if not found:
            raise HTTPException(404, "Object not found")
        return {"data": found[0]}

    @app.get("/classes/{class_name}")
    async def find_objects(
        class_name: str,
        request: Request,
        where: str | None = None,
        order: str | None = None,
        limit: int | None = Query(default=None, ge=0),
        skip: int = Query(default=0, ge=0),
        keys: str | None = None,
    ):
        """Query objects of a class (runs the find hooks).

        keys is a comma-separated list of fields to return.
        """
        try:
            constraints = json.loads(where) if where else {}
        except json.JSONDecodeError:
            raise HTTPException(400, "where must be a JSON object")
        if not isinstance(constraints, dict):
            raise HTTPException(400, "where must be a JSON object")

        found = await _find(
            request,
            class_name,
            {
                "where": constraints,
                "order": order,
                "limit": limit,
                "skip": skip,
                "keys": [k.strip() for k in keys.split(",") if k.strip()] if keys else None,
            },
        )
        if isinstance(found, JSONResponse):
            return found
        return {"results": found}

    return app


app = create_app()
