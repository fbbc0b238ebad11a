from __future__ import annotations

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from app.auth import Principal, Role

PRINCIPAL_EXEMPT_PATHS = {'/healthz', '/robots.txt'}

PRINCIPAL_ID_HEADER = 'x-principal-id'
PRINCIPAL_NAME_HEADER = 'x-principal-name'
PRINCIPAL_ROLE_HEADER = 'x-principal-role'
PRINCIPAL_STORE_HEADER = 'x-store-id'


def load_principal_from_headers(request: Request) -> Principal | None:
    """Build the caller from the identity headers set by the upstream gateway."""
    principal_id = request.headers.get(PRINCIPAL_ID_HEADER, '').strip()
    role_raw = request.headers.get(PRINCIPAL_ROLE_HEADER, '').strip().upper()
    if not principal_id or not role_raw:
        return None
    try:
        role = Role(role_raw)
    except ValueError:
        return None
    store_id = request.headers.get(PRINCIPAL_STORE_HEADER, '').strip() or None
    return Principal(
        id=principal_id,
        name=request.headers.get(PRINCIPAL_NAME_HEADER, '').strip() or principal_id,
        role=role,
        store_id=store_id,
    )


def install_principal_middleware(app: FastAPI) -> None:
    @app.middleware('http')
    async def principal_middleware(request: Request, call_next):
        request.state.principal = load_principal_from_headers(request)
        if request.url.path not in PRINCIPAL_EXEMPT_PATHS and request.state.principal is None:
            return JSONResponse({'detail': 'Not authenticated'}, status_code=401)
        return await call_next(request)
