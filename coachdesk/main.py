import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.exc import SQLAlchemyError

from coachdesk.core import config
from coachdesk.core.errors import register_exception_handlers
from coachdesk.database import init_db
from coachdesk.routes import (
    auth_routes,
    availability_routes,
    booking_routes,
    cron_routes,
    messaging_routes,
    package_routes,
    push_routes,
    scheduled_message_routes,
    subscription_routes,
)

logging.basicConfig(
    level=config.LOG_LEVEL,
    format='%(asctime)s %(levelname)s %(name)s: %(message)s',
)
config.validate_runtime_config()

app = FastAPI(title='Coachdesk API')

app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=['*'],
    allow_headers=['*'],
)

register_exception_handlers(app)

logger = logging.getLogger(__name__)


@app.on_event('startup')
def initialize_database() -> None:
    try:
        init_db()
    except SQLAlchemyError:
        logger.exception('Database initialization failed. Check DATABASE_URL.')


@app.get('/')
def root():
    return {'status': 'Coachdesk API Running'}


app.include_router(auth_routes.router, prefix='/auth')
app.include_router(availability_routes.router)
app.include_router(booking_routes.router)
app.include_router(package_routes.router)
app.include_router(subscription_routes.router)
app.include_router(scheduled_message_routes.router)
app.include_router(messaging_routes.router)
app.include_router(push_routes.router)
app.include_router(cron_routes.router)
