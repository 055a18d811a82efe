#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
HTTP surface for the dispatch core.

The map client posts its fleet and the emergencies it has seen so far to
`/optimise/` and draws the assignments and routes it gets back.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

from fastapi import Body, FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware

from . import __version__
from .capabilities import CAPABILITY_CATALOGUE, CAPABILITY_ORDER, PRIORITY_ORDER
from .config import DispatchConfig
from .errors import MalformedSnapshot, UnknownEntity
from .scheduler import DispatchScheduler, build_scheduler

logger = logging.getLogger("DispatchAPI")

PUBLISH_TIMEOUT_S = 30.0


def create_app(scheduler: Optional[DispatchScheduler] = None,
               config: Optional[DispatchConfig] = None) -> FastAPI:
    """
    Build the API application.

    Args:
        scheduler: Scheduler to expose; built from `config` if omitted
        config: Service configuration
    """
    config = config or DispatchConfig()
    scheduler = scheduler or build_scheduler(config)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        loop_task = None
        if config.api.autorun:
            loop_task = asyncio.create_task(scheduler.run())
        yield
        await scheduler.stop()
        if loop_task is not None:
            await loop_task
        await scheduler.router.close()

    app = FastAPI(title="Synaptic Dispatch API",
                  description="Emergency resource assignment and routing",
                  version=__version__,
                  lifespan=lifespan)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.api.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.state.scheduler = scheduler

    @app.get("/")
    async def root():
        """API root endpoint with basic info."""
        return {
            "name": "Synaptic Dispatch API",
            "version": __version__,
            "status": "running" if scheduler.running else "idle",
        }

    @app.get("/status")
    async def get_status():
        """Registry summary and scheduler state."""
        return scheduler.status()

    @app.get("/capabilities")
    async def get_capabilities():
        return {
            "capabilities": [
                {"tag": cap.value, "name": cap.name, **CAPABILITY_CATALOGUE[cap]}
                for cap in CAPABILITY_ORDER
            ],
            "priorities": [p.value for p in PRIORITY_ORDER],
        }

    @app.post("/optimise/")
    async def optimise(snapshot: Dict[str, Any] = Body(...)):
        """Ingest a fleet/emergency snapshot and return the next dispatch plan."""
        try:
            scheduler.submit_snapshot(snapshot)
        except MalformedSnapshot as e:
            raise HTTPException(status_code=422, detail={"message": str(e), "errors": e.errors})

        submitted_at = scheduler.cycle
        if not scheduler.running:
            payload = await scheduler.tick()
            if payload is not None:
                return payload
            if not scheduler.busy:
                raise HTTPException(status_code=500, detail="Dispatch cycle failed, see server log")

        try:
            return await scheduler.wait_for_publish(timeout=PUBLISH_TIMEOUT_S,
                                                    after_cycle=submitted_at)
        except asyncio.TimeoutError:
            raise HTTPException(status_code=504, detail="Timed out waiting for a dispatch cycle")

    @app.get("/assignments")
    async def get_assignments():
        """Last published payload."""
        if scheduler.last_payload is None:
            raise HTTPException(status_code=404, detail="Nothing published yet")
        return scheduler.last_payload

    @app.post("/emergencies/{emergency_id}/resolve")
    async def resolve_emergency(emergency_id: str):
        try:
            emergency = await scheduler.resolve_emergency(emergency_id)
        except UnknownEntity as e:
            raise HTTPException(status_code=404, detail=str(e))
        return emergency.to_dict()

    @app.post("/emergencies/{emergency_id}/cancel")
    async def cancel_emergency(emergency_id: str):
        try:
            emergency = await scheduler.cancel_emergency(emergency_id)
        except UnknownEntity as e:
            raise HTTPException(status_code=404, detail=str(e))
        return emergency.to_dict()

    @app.post("/resources/{resource_id}/retire")
    async def retire_resource(resource_id: str):
        try:
            resource = await scheduler.retire_resource(resource_id)
        except UnknownEntity as e:
            raise HTTPException(status_code=404, detail=str(e))
        return resource.to_dict()

    return app
