"""
Shared test fixtures for the Core Synthesis test suite.
"""

import json
import os
import sys

import pytest

import coresynth.store as store
from coresynth.ai_service import AINotConfiguredError
from coresynth.app import app, get_ai_client
from coresynth.models import Core, Location, Section

# Import DB init script (used by script tests)
sys.path.insert(0, os.path.join(os.path.dirname(os.path.dirname(__file__)), 'scripts'))


class FakeLLMClient:
    """Stand-in for GeminiClient that returns canned text and records calls."""

    def __init__(self, responses=None, error=None):
        self.responses = list(responses or [])
        self.error = error
        self.calls = []

    def generate(self, prompt, *, system_instruction=None, response_schema=None,
                 image=None, temperature=None, use_search=False):
        self.calls.append({
            'prompt': prompt,
            'system_instruction': system_instruction,
            'response_schema': response_schema,
            'image': image,
            'temperature': temperature,
            'use_search': use_search,
        })
        if self.error is not None:
            raise self.error
        if not self.responses:
            raise AssertionError("FakeLLMClient has no response left")
        response = self.responses.pop(0)
        if isinstance(response, (dict, list)):
            return json.dumps(response)
        return response


@pytest.fixture
def llm_factory():
    return FakeLLMClient


@pytest.fixture
def fake_llm():
    return FakeLLMClient()


@pytest.fixture
def test_db(tmp_path):
    """Temporary database with one core holding two sections."""
    db_path = str(tmp_path / "test_coresynth.db")
    store.create_database(db_path)

    store._set_db_path_for_testing(db_path)
    conn = store.get_db()
    store.create_core(conn, Core(id='CORE-1', user_id='user-1', name='Test Core',
                                 location=Location(lat=57.5, lon=-15.9), water_depth=1134,
                                 project='Test Leg'))
    upper = store.create_section(conn, Section(
        id='', core_id='CORE-1', name='Upper', section_depth=0,
        data_points=[
            {'depth': 0, 'delta18O': 3.2, 'mgCaRatio': 2.9},
            {'depth': 10, 'delta18O': 3.3},
            {'depth': 20, 'delta18O': 3.5},
            {'depth': 30, 'delta18O': 3.9},
        ]))
    lower = store.create_section(conn, Section(
        id='', core_id='CORE-1', name='Lower', section_depth=100,
        data_points=[
            {'depth': 100, 'delta18O': 4.1},
            {'depth': 110, 'delta18O': 4.4},
            {'depth': 120, 'delta18O': 4.6},
        ]))
    conn.close()
    store._reset_db_path()

    return {'path': db_path, 'core_id': 'CORE-1', 'upper': upper.id, 'lower': lower.id}


@pytest.fixture
def client(test_db, fake_llm):
    """TestClient on a temporary database, with the AI client replaced."""
    from starlette.testclient import TestClient

    store._set_db_path_for_testing(test_db['path'])
    app.dependency_overrides[get_ai_client] = lambda: fake_llm
    with TestClient(app) as client:
        yield client
    app.dependency_overrides.clear()
    store._reset_db_path()


@pytest.fixture
def unconfigured_client(test_db):
    """TestClient whose AI client has no API key."""
    from starlette.testclient import TestClient

    store._set_db_path_for_testing(test_db['path'])
    app.dependency_overrides[get_ai_client] = lambda: FakeLLMClient(error=AINotConfiguredError())
    with TestClient(app) as client:
        yield client
    app.dependency_overrides.clear()
    store._reset_db_path()


@pytest.fixture
def db_conn(test_db):
    store._set_db_path_for_testing(test_db['path'])
    conn = store.get_db()
    yield conn
    conn.close()
    store._reset_db_path()
