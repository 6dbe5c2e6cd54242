import logging

from fastapi import FastAPI

from .db import Base, engine, SessionLocal, ensure_schema
from .settings import settings
from .runtime import get_runtime, reset_runtime
from .routers import auth
from .routers import workspace
from .routers import capture
from .routers import artifacts
from .routers import submissions
from .routers import maintenance

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s - %(levelname)s - %(name)s - %(message)s"


def configure_logging(level: str | None = None) -> None:
	logging.basicConfig(level=(level or settings.log_level).upper(), format=LOG_FORMAT)
	# Third-party chatter
	logging.getLogger("docker").setLevel(logging.WARNING)
	logging.getLogger("urllib3").setLevel(logging.WARNING)
	logging.getLogger("httpx").setLevel(logging.WARNING)


configure_logging()

app = FastAPI(title="Codespace Proctor API")
app.include_router(auth.router)
app.include_router(workspace.router)
app.include_router(capture.router)
app.include_router(artifacts.router)
app.include_router(submissions.router)
app.include_router(maintenance.router)


@app.get("/info")
def root():
	rt = get_runtime()
	return {
		"status": "ok",
		"active_workspaces": len(rt.provisioner.sessions()),
		"periodic_capture": rt.scheduler.periodic_enabled,
		"shared_browser": rt.engine.browser.active,
	}


@app.on_event("startup")
async def startup_event():
	# Initialize DB schema
	Base.metadata.create_all(bind=engine)
	# Apply lightweight dev migrations
	try:
		ensure_schema()
	except Exception as e:
		logger.warning("Schema migration skipped: %s", e)
	db = SessionLocal()
	try:
		if auth.ensure_seed_admin(db):
			logger.info("Seeded admin account %s", settings.seed_admin_username)
	finally:
		db.close()
	get_runtime()
	logger.info("Codespace Proctor started")


@app.on_event("shutdown")
async def shutdown_event():
	runtime = reset_runtime()
	if runtime is not None:
		await runtime.shutdown()
	logger.info("Codespace Proctor stopped")
