from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI

from tutorhub.config import settings
from tutorhub.db import Base, engine
from tutorhub.route_logging import EndpointNameRoute
from tutorhub.routers import class_sessions, credits, cron, schedule_slots, timeslots, waitlist
from tutorhub.scheduler import start_scheduler, stop_scheduler

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s %(levelname)s %(name)s %(message)s',
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(_: FastAPI):
    Base.metadata.create_all(bind=engine)
    if settings.enable_scheduler:
        start_scheduler()
    else:
        logger.info('scheduler_disabled app_env=%s', settings.app_env)
    yield
    stop_scheduler()


app = FastAPI(title=settings.app_name, version='0.1.0', lifespan=lifespan)
app.router.route_class = EndpointNameRoute

app.include_router(class_sessions.router)
app.include_router(credits.router)
app.include_router(cron.router)
app.include_router(schedule_slots.router)
app.include_router(timeslots.router)
app.include_router(waitlist.router)


@app.get('/')
def health():
    return {'app': settings.app_name, 'status': 'ok'}


@app.get('/health')
def healthcheck():
    return {'status': 'ok', 'env': settings.app_env}
