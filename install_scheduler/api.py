"""
FastAPI application for installation conflict management.
Provides REST endpoints for detection, resolution and analytics plus a
WebSocket conflict feed.
"""

import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import List, Optional

from fastapi import Depends, FastAPI, HTTPException, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware

from .errors import (
    BulkResolutionError, ResolutionConflictError, ResolutionError, UnknownConflictError
)
from .models import ConflictAnalytics, ConflictResolutionHistory, ResolutionOutcome
from .schemas import (
    ApplyBulkRequest, ApplyRequest, AutoResolveRequest, DetectRequest, DetectResponse,
    HealthResponse, ProposeRequest, ProposeResponse, ResolutionResponse, RevertRequest,
    SweepResponse
)
from .service import ConflictService


logger = logging.getLogger(__name__)


def get_service(request: Request) -> ConflictService:
    """Dependency to get the service owned by this app."""
    if request.app.state.service is None:
        request.app.state.service = ConflictService()
    return request.app.state.service


def _resolution_error(e: Exception) -> HTTPException:
    if isinstance(e, ResolutionConflictError):
        detail = {"message": str(e), "expected_version": e.expected_version,
                  "actual_version": e.actual_version}
        return HTTPException(status_code=409, detail=detail)
    if isinstance(e, BulkResolutionError):
        return HTTPException(status_code=422, detail={"message": str(e),
                                                      "failed_conflict_id": e.failed_conflict_id})
    if isinstance(e, UnknownConflictError):
        return HTTPException(status_code=404, detail=str(e))
    return HTTPException(status_code=400, detail=str(e))


def create_app(service: Optional[ConflictService] = None) -> FastAPI:
    """Create and configure FastAPI application."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        # Clean up on shutdown
        if app.state.service:
            await app.state.service.close()
        logger.info("Installation Conflict API stopped")

    app = FastAPI(
        title="Installation Conflict Engine",
        description="Scheduling conflict detection and resolution for field installation teams",
        version="0.1.0",
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan
    )
    app.state.service = service

    # Add CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[
            "http://localhost:5173",
            "http://127.0.0.1:5173",
            "http://localhost:3000",
            "http://127.0.0.1:3000",
        ],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/health", response_model=HealthResponse)
    async def health_check(svc: ConflictService = Depends(get_service)):
        """Health check endpoint."""
        health_data = svc.health_check()
        return HealthResponse(
            status=health_data["status"],
            version=svc.config.project.version,
            database_connected=health_data["database_connected"],
            geocoding_configured=health_data["geocoding_configured"],
            active_sweeps=health_data["active_sweeps"],
            timestamp=health_data["timestamp"]
        )

    @app.post("/conflicts/detect", response_model=DetectResponse)
    async def detect_conflicts(request: DetectRequest, svc: ConflictService = Depends(get_service)):
        """Detect conflicts in a snapshot over a date range."""
        try:
            return await svc.detect(request)
        except Exception as e:
            logger.error(f"Detection failed: {e}")
            raise HTTPException(status_code=500, detail=str(e))

    @app.post("/conflicts/changed", response_model=DetectResponse)
    async def assignments_changed(request: DetectRequest, svc: ConflictService = Depends(get_service)):
        """Assignment mutation hook: detect now and push the result to feed subscribers."""
        try:
            conflicts = await svc.on_assignments_changed(request.snapshot, request.date_range)
            return DetectResponse(
                organization_id=request.snapshot.organization_id,
                project_id=request.snapshot.project_id,
                version=request.snapshot.version,
                conflicts=conflicts,
            )
        except Exception as e:
            logger.error(f"Change detection failed: {e}")
            raise HTTPException(status_code=500, detail=str(e))

    @app.post("/conflicts/propose", response_model=ProposeResponse)
    async def propose_resolutions(request: ProposeRequest, svc: ConflictService = Depends(get_service)):
        """Candidate resolutions for one conflict, best first."""
        try:
            return await svc.propose(request)
        except UnknownConflictError as e:
            raise HTTPException(status_code=404, detail=str(e))
        except Exception as e:
            logger.error(f"Proposal failed: {e}")
            raise HTTPException(status_code=500, detail=str(e))

    @app.post("/conflicts/apply", response_model=ResolutionResponse)
    async def apply_resolution(request: ApplyRequest, svc: ConflictService = Depends(get_service)):
        """
        Apply one resolution.
        Returns 409 when the snapshot changed since the resolution was proposed.
        """
        try:
            return await svc.apply(request)
        except ResolutionError as e:
            logger.warning(f"Apply rejected: {e}")
            raise _resolution_error(e)
        except Exception as e:
            logger.error(f"Apply failed: {e}")
            raise HTTPException(status_code=500, detail=str(e))

    @app.post("/conflicts/apply-bulk", response_model=ResolutionResponse)
    async def apply_bulk(request: ApplyBulkRequest, svc: ConflictService = Depends(get_service)):
        """Apply several resolutions atomically; 422 names the conflict that failed."""
        try:
            return await svc.apply_bulk(request)
        except ResolutionError as e:
            logger.warning(f"Bulk apply rejected: {e}")
            raise _resolution_error(e)
        except Exception as e:
            logger.error(f"Bulk apply failed: {e}")
            raise HTTPException(status_code=500, detail=str(e))

    @app.post("/conflicts/auto-resolve", response_model=ResolutionResponse)
    async def auto_resolve(request: AutoResolveRequest, svc: ConflictService = Depends(get_service)):
        try:
            return await svc.auto_resolve(request)
        except ResolutionError as e:
            raise _resolution_error(e)
        except Exception as e:
            logger.error(f"Auto-resolve failed: {e}")
            raise HTTPException(status_code=500, detail=str(e))

    @app.post("/conflicts/revert", response_model=ResolutionResponse)
    async def revert_resolution(request: RevertRequest, svc: ConflictService = Depends(get_service)):
        try:
            return await svc.revert(request)
        except (ResolutionError, UnknownConflictError) as e:
            raise _resolution_error(e)
        except Exception as e:
            logger.error(f"Revert failed: {e}")
            raise HTTPException(status_code=500, detail=str(e))

    @app.get("/analytics/{organization_id}/{project_id}", response_model=ConflictAnalytics)
    async def get_analytics(organization_id: str, project_id: str,
                            svc: ConflictService = Depends(get_service)):
        """Summary over the stored resolution history of a project."""
        try:
            return svc.summarize(organization_id, project_id)
        except Exception as e:
            logger.error(f"Failed to build analytics: {e}")
            raise HTTPException(status_code=500, detail=str(e))

    @app.get("/history/{organization_id}/{project_id}", response_model=List[ConflictResolutionHistory])
    async def get_history(
        organization_id: str,
        project_id: str,
        outcome: Optional[ResolutionOutcome] = None,
        since: Optional[datetime] = None,
        limit: Optional[int] = None,
        svc: ConflictService = Depends(get_service)
    ):
        try:
            return svc.list_history(organization_id, project_id, outcome=outcome, since=since, limit=limit)
        except Exception as e:
            logger.error(f"Failed to list history: {e}")
            raise HTTPException(status_code=500, detail=str(e))

    @app.post("/sweeps/{organization_id}/{project_id}", response_model=SweepResponse)
    async def start_sweep(organization_id: str, project_id: str,
                          svc: ConflictService = Depends(get_service)):
        """Periodically re-check the latest snapshot seen for the project."""
        try:
            svc.start_sweep(organization_id, project_id)
        except UnknownConflictError as e:
            raise HTTPException(status_code=404, detail=str(e))
        return SweepResponse(
            organization_id=organization_id,
            project_id=project_id,
            running=svc.sweep_running(organization_id, project_id),
            active_sweeps=svc.sweeper.active,
        )

    @app.delete("/sweeps/{organization_id}/{project_id}", response_model=SweepResponse)
    async def stop_sweep(organization_id: str, project_id: str,
                         svc: ConflictService = Depends(get_service)):
        await svc.stop_sweep(organization_id, project_id)
        return SweepResponse(
            organization_id=organization_id,
            project_id=project_id,
            running=False,
            active_sweeps=svc.sweeper.active,
        )

    @app.websocket("/ws/conflicts/{organization_id}/{project_id}")
    async def conflict_feed(websocket: WebSocket, organization_id: str, project_id: str):
        """Push every detection result for the project to the client."""
        if app.state.service is None:
            app.state.service = ConflictService()
        svc = app.state.service
        await websocket.accept()
        queue = await svc.feed.subscribe(organization_id, project_id)
        try:
            while True:
                message = await queue.get()
                await websocket.send_text(message.model_dump_json())
        except WebSocketDisconnect:
            logger.info(f"Feed client disconnected from {organization_id}/{project_id}")
        finally:
            await svc.feed.unsubscribe(organization_id, project_id, queue)

    return app


# Create the app instance
app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
