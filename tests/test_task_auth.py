"""Tests that the worker task endpoints require authentication.

Google OIDC verification is mocked; the internal secret is only honoured
while the audience is the local-dev sentinel.
"""

from __future__ import annotations

from unittest.mock import patch

import pytest
from fastapi.testclient import TestClient

from inboxsync.api.factory import create_app
from inboxsync.api.task_auth import LOCAL_DEV_AUDIENCE, verify_task_oidc

AUDIENCE = "https://worker.example.com"
SERVICE_ACCOUNT = "scheduler@project.iam.gserviceaccount.com"
URL = "/tasks/sync/connection-state/inst-1"


@pytest.fixture
def worker_client(monkeypatch):
    from inboxsync.api.routes import tasks_sync

    class _Gateway:
        def connection_state(self, instance):
            return "open"

    monkeypatch.setattr(tasks_sync, "_get_gateway", lambda: _Gateway())
    return TestClient(create_app(role="worker"))


class TestOidc:
    def test_no_credentials_401(self, worker_client, monkeypatch):
        monkeypatch.setenv("TASKS_OIDC_AUDIENCE", AUDIENCE)
        response = worker_client.get(URL)
        assert response.status_code == 401

    def test_valid_token(self, worker_client, monkeypatch):
        monkeypatch.setenv("TASKS_OIDC_AUDIENCE", AUDIENCE)
        monkeypatch.setenv("TASKS_OIDC_SERVICE_ACCOUNT", SERVICE_ACCOUNT)
        with patch(
            "inboxsync.api.task_auth.id_token.verify_oauth2_token", return_value={"email": SERVICE_ACCOUNT}
        ) as verify:
            response = worker_client.get(URL, headers={"Authorization": "Bearer good-token"})

        assert response.status_code == 200
        assert response.json()["connected"] is True
        assert verify.call_args.kwargs["audience"] == AUDIENCE

    def test_wrong_service_account(self, worker_client, monkeypatch):
        monkeypatch.setenv("TASKS_OIDC_AUDIENCE", AUDIENCE)
        monkeypatch.setenv("TASKS_OIDC_SERVICE_ACCOUNT", SERVICE_ACCOUNT)
        with patch(
            "inboxsync.api.task_auth.id_token.verify_oauth2_token", return_value={"email": "other@example.com"}
        ):
            response = worker_client.get(URL, headers={"Authorization": "Bearer good-token"})
        assert response.status_code == 401

    def test_invalid_token(self, worker_client, monkeypatch):
        monkeypatch.setenv("TASKS_OIDC_AUDIENCE", AUDIENCE)
        with patch(
            "inboxsync.api.task_auth.id_token.verify_oauth2_token", side_effect=ValueError("Token expired")
        ):
            response = worker_client.get(URL, headers={"Authorization": "Bearer stale"})
        assert response.status_code == 401

    def test_fails_closed_without_audience(self, monkeypatch):
        monkeypatch.delenv("TASKS_OIDC_AUDIENCE", raising=False)
        assert verify_task_oidc("any-token") is False


class TestInternalSecret:
    def test_accepted_in_local_dev(self, worker_client, monkeypatch):
        monkeypatch.setenv("TASKS_OIDC_AUDIENCE", LOCAL_DEV_AUDIENCE)
        monkeypatch.setenv("INTERNAL_TASK_SECRET", "s3cret")
        response = worker_client.get(URL, headers={"X-Internal-Task-Secret": "s3cret"})
        assert response.status_code == 200

    def test_wrong_secret(self, worker_client, monkeypatch):
        monkeypatch.setenv("TASKS_OIDC_AUDIENCE", LOCAL_DEV_AUDIENCE)
        monkeypatch.setenv("INTERNAL_TASK_SECRET", "s3cret")
        response = worker_client.get(URL, headers={"X-Internal-Task-Secret": "guess"})
        assert response.status_code == 401

    def test_ignored_outside_local_dev(self, worker_client, monkeypatch):
        monkeypatch.setenv("TASKS_OIDC_AUDIENCE", AUDIENCE)
        monkeypatch.setenv("INTERNAL_TASK_SECRET", "s3cret")
        response = worker_client.get(URL, headers={"X-Internal-Task-Secret": "s3cret"})
        assert response.status_code == 401

    def test_empty_secret_never_matches(self, worker_client, monkeypatch):
        monkeypatch.setenv("TASKS_OIDC_AUDIENCE", LOCAL_DEV_AUDIENCE)
        monkeypatch.delenv("INTERNAL_TASK_SECRET", raising=False)
        response = worker_client.get(URL, headers={"X-Internal-Task-Secret": ""})
        assert response.status_code == 401
