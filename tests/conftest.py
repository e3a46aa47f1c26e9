import hashlib

import pytest
from fastapi.testclient import TestClient

from qtimer import db as qdb
from qtimer.main import app
from qtimer.settings import settings

HEADER = ";SEXO|NOMBRE|CHIP|DORSAL|MODALIDAD|CATEGORIA|POSICION|TIEMPO|CIUDAD|EQUIPO"


def racecheck(event_name, rows, header=HEADER, race=";1|10K"):
    """Build the bytes of a .racecheck file."""
    lines = [event_name]
    if race:
        lines.append(race)
    if header:
        lines.append(header)
    lines.extend(rows)
    return ("\n".join(lines) + "\n").encode("utf-8")


def ten_k_rows(count=10, distance="10K", category="SENIOR"):
    return [
        f"{'M' if i % 2 else 'F'}|Runner {i:03d}|C{i:03d}|{i:03d}|{distance}|{category}|{i}|00:{30 + i:02d}:00|Sevilla|Club {i % 3}"
        for i in range(1, count + 1)
    ]


def sha(content: bytes) -> str:
    return hashlib.sha256(content).hexdigest()


@pytest.fixture(scope="function")
def db(tmp_path):
    qdb.init_db(f"sqlite:///{tmp_path / 'qtimer_test.db'}")
    session = qdb.new_session()
    try:
        yield session
    finally:
        session.close()
        qdb.dispose_db()


@pytest.fixture(scope="function")
def client(db):
    with TestClient(app) as c:
        yield c


@pytest.fixture(scope="function")
def admin_headers(client):
    r = client.post("/auth/login", json={"password": settings.QTIMER_ADMIN_PASSWORD})
    assert r.status_code == 200
    # authenticate through the header only
    client.cookies.clear()
    return {"Authorization": f"Bearer {r.json()['token']}"}


@pytest.fixture
def upload(client, admin_headers):
    def _upload(content, filename="results.racecheck", event_id=None, hash_value=None):
        url = f"/events/{event_id}/upload" if event_id is not None else "/events/upload"
        return client.post(
            url,
            files={"file": (filename, content, "application/octet-stream")},
            data={"hash": hash_value if hash_value is not None else sha(content)},
            headers=admin_headers,
        )
    return _upload
