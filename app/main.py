from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.responses import PlainTextResponse

from app.db import init_db
from app.logging_config import configure_logging
from app.routers import documents
from app.security.headers import install_security_headers
from app.security.principal import install_principal_middleware


@asynccontextmanager
async def lifespan(_: FastAPI):
    configure_logging()
    init_db()
    yield


app = FastAPI(title='Store Logbook', lifespan=lifespan)

install_principal_middleware(app)
install_security_headers(app)

app.include_router(documents.router)


@app.get('/healthz')
def healthz() -> dict:
    return {'status': 'ok'}


@app.get('/robots.txt', response_class=PlainTextResponse)
def robots_txt() -> str:
    return 'User-agent: *\nDisallow: /\n'
