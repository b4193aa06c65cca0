import logging

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError
from starlette.exceptions import HTTPException as StarletteHTTPException

import therapy_backend.models  # noqa: F401
from therapy_backend.core import config
from therapy_backend.database import Base, engine, ensure_schema
from therapy_backend.middleware.role_access import RoleAccessMiddleware
from therapy_backend.routes import (
    auth_routes,
    blog_routes,
    manager_routes,
    notification_routes,
    parent_routes,
    patient_routes,
    payment_routes,
    profile_routes,
    therapist_routes,
)

logging.basicConfig(
    level=config.LOG_LEVEL,
    format='%(asctime)s %(levelname)s %(name)s: %(message)s',
)

logger = logging.getLogger(__name__)

app = FastAPI(title='Therapy Scheduling API')

app.add_middleware(RoleAccessMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=['*'],
    allow_headers=['*'],
)


def error_body(detail) -> dict:
    if isinstance(detail, dict):
        body = dict(detail)
        body['error'] = body.pop('message', 'Request failed')
        return body
    return {'error': detail}


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(status_code=exc.status_code, content=error_body(exc.detail), headers=exc.headers)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    details = [
        {'field': '.'.join(str(part) for part in error['loc'][1:]), 'message': error['msg']}
        for error in exc.errors()
    ]
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={'error': 'Invalid request', 'details': details},
    )


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.exception('Unhandled error on %s %s', request.method, request.url.path)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={'error': 'Internal server error'},
    )


@app.on_event('startup')
def initialize_database() -> None:
    config.validate_runtime_config()
    try:
        Base.metadata.create_all(bind=engine)
        ensure_schema()
    except SQLAlchemyError:
        logger.exception('Database initialization failed. Check DATABASE_URL and Postgres credentials.')


@app.get('/')
def root():
    return {'status': 'Therapy Scheduling API Running'}


app.include_router(auth_routes.router, prefix='/api/auth')
app.include_router(profile_routes.router, prefix='/api')
app.include_router(patient_routes.router, prefix='/api/patient')
app.include_router(parent_routes.router, prefix='/api/parent')
app.include_router(therapist_routes.router, prefix='/api/therapist')
app.include_router(manager_routes.router, prefix='/api/manager')
app.include_router(payment_routes.router, prefix='/api/payment')
app.include_router(notification_routes.router, prefix='/api/notifications')
app.include_router(blog_routes.router, prefix='/api/blogs')
