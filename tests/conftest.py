"""
Fixtures compartidas: BD temporal, settings y colector falso (aiohttp)
"""

from typing import Any, Dict, List

import pytest
import pytest_asyncio
from aiohttp import web
from aiohttp.test_utils import TestServer
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from cr_mobile.core.config import Settings
from cr_mobile.persistence.models import Base


class FakeCollector:
    """Colector que deduplica por id, como haría el backend real."""

    def __init__(self) -> None:
        self.records: Dict[str, Dict[str, Any]] = {}
        self.requests: List[Dict[str, Any]] = []
        self.status_override = None
        self.lost_acks = 0
        self.url = ""

    async def handle(self, request: web.Request) -> web.Response:
        body = await request.json()
        self.requests.append({"headers": request.headers.copy(), "body": body})

        if self.status_override is not None:
            return web.Response(status=self.status_override, text="forced")

        created = False
        for report in body["reports"]:
            if report["id"] not in self.records:
                self.records[report["id"]] = report
                created = True

        if self.lost_acks > 0:
            # Guardado en el servidor pero el ack no llega al cliente
            self.lost_acks -= 1
            return web.Response(status=503, text="ack lost")

        return web.json_response({"stored": created}, status=201 if created else 409)


@pytest_asyncio.fixture
async def collector():
    fake = FakeCollector()
    app = web.Application()
    app.router.add_post("/v1/reports", fake.handle)
    server = TestServer(app)
    await server.start_server()
    fake.url = str(server.make_url("/v1/reports"))
    yield fake
    await server.close()


@pytest.fixture
def db_path(tmp_path):
    return tmp_path / "reports.db"


@pytest.fixture
def temp_db(db_path):
    engine = create_engine(f"sqlite:///{db_path}", echo=False)
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(temp_db):
    return sessionmaker(bind=temp_db)


@pytest.fixture
def settings(db_path):
    return Settings(
        COLLECTOR_ENDPOINT="http://127.0.0.1:9/v1/reports",
        AUTH_TOKEN="test-token",
        APP_SECRET="app-secret",
        DB_PATH=db_path,
        MAX_RETRIES=3,
        BACKOFF_BASE_MS=0,
        UPLOAD_TIMEOUT_SECONDS=5,
    )
