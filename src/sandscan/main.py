# src/sandscan/main.py

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from sandscan.api.routes import router
from sandscan.config import settings
from sandscan.engine.errors import InvalidInput, NotFound
from sandscan.engine.job_manager import JobManager
from sandscan.engine.services import AnalysisServices
import logging
import uuid


# Configure structured logging
logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format='%(asctime)s %(levelname)s %(name)s %(message)s'
)


def create_app(job_manager=None) -> FastAPI:
    app = FastAPI(title="Sandscan Supply-Chain Analyzer")
    app.state.job_manager = job_manager

    @app.middleware("http")
    async def add_trace_id_and_log(request: Request, call_next):
        trace_id = str(uuid.uuid4())
        request.state.trace_id = trace_id
        logging.info(f"[trace_id={trace_id}] Incoming request: {request.method} {request.url}")
        try:
            response = await call_next(request)
        except Exception as exc:
            logging.error(f"[trace_id={trace_id}] Unhandled error: {exc}")
            return JSONResponse(
                status_code=500,
                content={"success": False, "error": "Internal server error", "trace_id": trace_id}
            )
        response.headers["X-Trace-Id"] = trace_id
        return response

    @app.exception_handler(InvalidInput)
    async def invalid_input_handler(request: Request, exc: InvalidInput):
        return JSONResponse(status_code=400, content={"success": False, "error": str(exc)})

    @app.exception_handler(NotFound)
    async def not_found_handler(request: Request, exc: NotFound):
        return JSONResponse(status_code=404, content={"success": False, "error": str(exc)})

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        trace_id = getattr(request.state, "trace_id", str(uuid.uuid4()))
        logging.error(f"[trace_id={trace_id}] Exception: {exc}")
        return JSONResponse(
            status_code=500,
            content={"success": False, "error": str(exc), "trace_id": trace_id}
        )

    app.include_router(router)

    @app.on_event("startup")
    def on_startup():
        if app.state.job_manager is None:
            app.state.job_manager = JobManager(AnalysisServices.from_settings(settings))
        logging.info("Sandscan API started.")

    @app.on_event("shutdown")
    def on_shutdown():
        if app.state.job_manager is not None:
            app.state.job_manager.shutdown()
        logging.info("Sandscan API stopped.")

    return app


app = create_app()
