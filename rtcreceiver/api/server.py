"""
Read-only FastAPI diagnostics surface for a running receiver.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware

from ..config import PROFILES_PATH, ConfigError, read_profiles
from ..rtc.orchestrator import NegotiationOrchestrator
from . import schemas

LOG = logging.getLogger(__name__)


def build_status(orchestrator: NegotiationOrchestrator) -> schemas.StatusModel:
    snapshot = orchestrator.snapshot()
    target = getattr(orchestrator.display, "target_size", None)
    return schemas.StatusModel(
        state=snapshot.state.value,
        channel_state=snapshot.channel_state,
        connection_state=snapshot.connection_state.value,
        ice_connection_state=snapshot.ice_connection_state.value,
        has_remote_description=snapshot.has_remote_description,
        pending_candidates=snapshot.pending_candidates,
        video_receiving=snapshot.video_receiving,
        frame_size=_size_model(snapshot.frame_size),
        target_size=_size_model(target),
        errors=[schemas.ErrorModel(**error.to_dict()) for error in snapshot.errors],
        offers_created=snapshot.offers_created,
        candidates_applied=snapshot.candidates_applied,
        candidates_sent=snapshot.candidates_sent,
    )


def _size_model(size: Optional[tuple]) -> Optional[schemas.FrameSizeModel]:
    if not size:
        return None
    width, height = size
    return schemas.FrameSizeModel(width=width, height=height)


def create_app(
    orchestrator: NegotiationOrchestrator,
    *,
    profiles_path: Path = PROFILES_PATH,
) -> FastAPI:
    app = FastAPI(title="RTC Receiver Diagnostics")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET"],
        allow_headers=["*"],
    )

    @app.get("/healthz", response_model=schemas.HealthModel)
    async def healthz() -> schemas.HealthModel:
        return schemas.HealthModel(state=orchestrator.state.value)

    @app.get("/status", response_model=schemas.StatusModel, response_model_by_alias=True)
    async def status() -> schemas.StatusModel:
        return build_status(orchestrator)

    @app.get("/profiles")
    async def list_profiles() -> dict:
        try:
            profiles = read_profiles(profiles_path)
        except ConfigError as exc:
            raise HTTPException(status_code=500, detail=str(exc)) from exc
        return {"profiles": profiles}

    return app


__all__ = ["build_status", "create_app"]
