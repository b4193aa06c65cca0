"""Request-time gate from a user's role to the page paths it may open.

API paths are left to the route dependencies, which answer with JSON 401/403
instead of redirects.
"""

import logging
import re

from fastapi import Request
from fastapi.responses import RedirectResponse
from starlette.middleware.base import BaseHTTPMiddleware

from therapy_backend.auth import jwt_handler
from therapy_backend.core import config
from therapy_backend.models.user import ROLE_ADMIN, ROLE_MANAGER, ROLE_PARENT, ROLE_PATIENT, ROLE_THERAPIST

logger = logging.getLogger(__name__)

LOGIN_PATH = '/login'

PUBLIC_PATHS = (
    '/',
    '/login',
    '/signup',
    '/therapist/signup',
    '/dashboard-redirect',
    '/api-docs',
    '/docs',
    '/redoc',
    '/openapi.json',
    '/api/auth',
    '/api/payment/notify',
)

ROLE_ROUTES = {
    ROLE_PATIENT: re.compile(r'^/(dashboard|sessions(/|$)|profile/create)'),
    ROLE_THERAPIST: re.compile(r'^/therapist/(dashboard|verification)'),
    ROLE_PARENT: re.compile(r'^/parent/'),
    ROLE_MANAGER: re.compile(r'^/manager/'),
    ROLE_ADMIN: re.compile(r'^/admin/'),
}

ROLE_DASHBOARDS = {
    ROLE_PATIENT: '/dashboard',
    ROLE_PARENT: '/parent/dashboard',
    ROLE_THERAPIST: '/therapist/dashboard',
    ROLE_MANAGER: '/manager/dashboard',
    ROLE_ADMIN: '/admin/dashboard',
}


def is_public_path(path: str) -> bool:
    if path == '/':
        return True
    return any(path == public or path.startswith(public + '/') for public in PUBLIC_PATHS if public != '/')


def is_api_path(path: str) -> bool:
    return path.startswith('/api/')


def dashboard_for_role(role: str) -> str:
    return ROLE_DASHBOARDS.get(role, '/dashboard')


def is_path_allowed(role: str, path: str) -> bool:
    pattern = ROLE_ROUTES.get(role)
    return bool(pattern and pattern.match(path))


def resolve_redirect(role: str | None, path: str) -> str | None:
    """Where a request for ``path`` should be sent instead, or None to let it through."""
    if is_public_path(path) or is_api_path(path):
        return None
    if not role:
        return LOGIN_PATH
    if is_path_allowed(role, path):
        return None
    return dashboard_for_role(role)


def extract_token(request: Request) -> str | None:
    authorization = request.headers.get('authorization', '')
    scheme, _, token = authorization.partition(' ')
    if scheme.lower() == 'bearer' and token:
        return token.strip()
    return request.cookies.get(config.ACCESS_TOKEN_COOKIE)


def role_from_request(request: Request) -> str | None:
    token = extract_token(request)
    if not token:
        return None
    try:
        payload = jwt_handler.decode_access_token(token)
    except Exception:
        logger.debug('Rejected unreadable access token on %s', request.url.path)
        return None
    return payload.get('role')


class RoleAccessMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        path = request.url.path

        if is_public_path(path):
            return await call_next(request)

        role = role_from_request(request)
        target = resolve_redirect(role, path)
        if target is not None:
            logger.debug('Redirecting %s request for %s to %s', role or 'anonymous', path, target)
            return RedirectResponse(url=target, status_code=307)

        return await call_next(request)
