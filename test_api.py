# -*- coding: utf-8 -*-
"""
API 接口测试

本测试文件验证 FastAPI API 接口的功能：
1. 项目创建、状态查询和审批
2. 提示词获取与单场景重新生成
3. 状态错误和密钥缺失的错误码
4. 密钥管理
"""
import os
import tempfile
import time

import pytest
from fastapi.testclient import TestClient

import api
from api import app, project_store, ProjectStore
from config import PipelineConfig
from conftest import SAMPLE_SCRIPT, make_handler, sample_identities
from key_rotator import CredentialStore, KeyRotator
from llm_client import MockLLMClient


@pytest.fixture
def workspace(monkeypatch):
    """把配置、密钥文件和快照都指向临时目录，远程服务替换为 Mock"""
    with tempfile.TemporaryDirectory() as tmp:
        config = PipelineConfig(
            scene_duration=4.0,
            annotation_batch_size=3,
            snapshot_path=os.path.join(tmp, "progress.json"),
            keys_path=os.path.join(tmp, "keys.json")
        )
        monkeypatch.setattr(api, "get_config", lambda: config)
        monkeypatch.setattr(api, "get_text_service", lambda: MockLLMClient(handler=make_handler()))
        project_store._projects = {}
        yield tmp


@pytest.fixture
def client(workspace):
    """创建测试客户端，后台任务运行在客户端的事件循环中"""
    with TestClient(app) as test_client:
        yield test_client


def wait_for(client, project_id, predicate, timeout=10.0):
    """轮询项目状态直到满足条件"""
    deadline = time.time() + timeout
    while time.time() < deadline:
        info = client.get(f"/api/v1/projects/{project_id}").json()
        if predicate(info):
            return info
        time.sleep(0.02)
    raise AssertionError(f"project {project_id} stuck in {info}")


def create_project(client, **extra):
    payload = {"script": SAMPLE_SCRIPT, "style": "Oil painting"}
    payload.update(extra)
    response = client.post("/api/v1/projects", json=payload)
    assert response.status_code == 200
    return response.json()["project_id"]


def awaiting_approval(info):
    return info["phase"] == "awaiting_approval"


def finished(info):
    return info["phase"] == "idle" and info["outcome"] is not None


class TestProjectStore:
    """测试项目存储"""

    def test_create_and_get(self):
        store = ProjectStore()
        project = store.create_project("p1", orchestrator=None)
        assert project["project_id"] == "p1"
        assert project["task"] is None
        assert store.get_project("p1") is project
        assert store.get_project("nonexistent") is None
        assert store.count() == 1

    def test_touch_updates_timestamp(self):
        store = ProjectStore()
        project = store.create_project("p1", orchestrator=None)
        before = project["updated_at"]
        time.sleep(0.01)
        store.touch("p1")
        assert project["updated_at"] > before
        store.touch("missing")


class TestBasicEndpoints:
    """测试基础端点"""

    def test_root(self, client):
        response = client.get("/")
        assert response.status_code == 200
        data = response.json()
        assert data["service"] == "Scene Prompt API"
        assert data["status"] == "running"

    def test_health_check(self, client):
        response = client.get("/api/v1/health")
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["active_projects"] == 0
        assert "timestamp" in data

    def test_project_not_found(self, client):
        for path in ["", "/analysis", "/prompts"]:
            response = client.get(f"/api/v1/projects/nonexistent{path}")
            assert response.status_code == 404
            assert "detail" in response.json()
        assert client.post("/api/v1/projects/nonexistent/approve", json={}).status_code == 404
        assert client.post("/api/v1/projects/nonexistent/cancel").status_code == 404

    def test_empty_script_rejected(self, client):
        response = client.post("/api/v1/projects", json={"script": ""})
        assert response.status_code == 422


class TestProjectLifecycle:
    """测试项目完整流程：分析 → 审批 → 生成"""

    def test_approve_then_complete(self, client):
        project_id = create_project(client)
        info = wait_for(client, project_id, awaiting_approval)
        assert info["total_scenes"] > 0

        analysis = client.get(f"/api/v1/projects/{project_id}/analysis").json()
        assert analysis["characters"]["CHAR_A"]["name"] == "Elena Marsh"
        assert len(analysis["scenes"]) == info["total_scenes"]

        response = client.post(f"/api/v1/projects/{project_id}/approve", json={})
        assert response.status_code == 200

        info = wait_for(client, project_id, finished)
        assert info["outcome"] == "complete"
        assert info["current_scene"] == info["total_scenes"]

        data = client.get(f"/api/v1/projects/{project_id}/prompts").json()
        assert data["is_complete"] is True
        assert [p["scene_id"] for p in data["prompts"]] == \
            [f"S{i + 1}" for i in range(info["total_scenes"])]
        assert all(p["visual_style"] == "Oil painting" for p in data["prompts"])

    def test_approve_with_edited_identities(self, client):
        project_id = create_project(client)
        wait_for(client, project_id, awaiting_approval)

        edited = dict(sample_identities()["CHAR_A"].to_dict(), outfit_top="crimson dress uniform")
        response = client.post(f"/api/v1/projects/{project_id}/approve",
                               json={"characters": {"CHAR_A": edited}})
        assert response.status_code == 200

        wait_for(client, project_id, finished)
        prompts = client.get(f"/api/v1/projects/{project_id}/prompts").json()["prompts"]
        assert all(p["character_lock"]["CHAR_A"]["outfit_top"] == "crimson dress uniform" for p in prompts)
        assert all("CHAR_B" not in p["character_lock"] for p in prompts)

    def test_invalid_edits_rejected(self, client):
        project_id = create_project(client)
        wait_for(client, project_id, awaiting_approval)

        response = client.post(f"/api/v1/projects/{project_id}/approve",
                               json={"characters": {"elena": {"name": "Elena"}}})
        assert response.status_code == 422

        info = client.get(f"/api/v1/projects/{project_id}").json()
        assert info["phase"] == "awaiting_approval"
        client.post(f"/api/v1/projects/{project_id}/cancel")
        wait_for(client, project_id, finished)

    def test_cancel_during_approval(self, client):
        project_id = create_project(client)
        wait_for(client, project_id, awaiting_approval)

        response = client.post(f"/api/v1/projects/{project_id}/cancel")
        assert response.status_code == 200

        info = wait_for(client, project_id, finished)
        assert info["outcome"] == "cancelled"
        assert client.get(f"/api/v1/projects/{project_id}/prompts").json()["prompts"] == []

    def test_state_errors_are_conflicts(self, client):
        project_id = create_project(client)
        wait_for(client, project_id, awaiting_approval)

        assert client.post(f"/api/v1/projects/{project_id}/pause").status_code == 409
        assert client.post(f"/api/v1/projects/{project_id}/resume").status_code == 409
        assert client.post(f"/api/v1/projects/{project_id}/scenes/0/regenerate").status_code == 409

        client.post(f"/api/v1/projects/{project_id}/approve", json={})
        wait_for(client, project_id, finished)
        assert client.post(f"/api/v1/projects/{project_id}/approve", json={}).status_code == 409


class TestRegenerate:
    """测试单场景重新生成"""

    def test_regenerate_scene(self, client):
        project_id = create_project(client)
        wait_for(client, project_id, awaiting_approval)
        client.post(f"/api/v1/projects/{project_id}/approve", json={})
        info = wait_for(client, project_id, finished)
        before = client.get(f"/api/v1/projects/{project_id}/prompts").json()["prompts"]

        response = client.post(f"/api/v1/projects/{project_id}/scenes/1/regenerate")
        assert response.status_code == 200
        after = response.json()["prompts"]
        assert len(after) == info["total_scenes"]
        assert after[1]["scene_id"] == "S2"
        assert after[0] == before[0]

    def test_regenerate_out_of_range(self, client):
        project_id = create_project(client)
        wait_for(client, project_id, awaiting_approval)
        client.post(f"/api/v1/projects/{project_id}/approve", json={})
        wait_for(client, project_id, finished)

        response = client.post(f"/api/v1/projects/{project_id}/scenes/999/regenerate")
        assert response.status_code == 404


class TestResume:
    """测试从快照继续"""

    def test_resume_missing_snapshot(self, client, workspace):
        response = client.post("/api/v1/projects/resume",
                               json={"snapshot_path": os.path.join(workspace, "missing.json")})
        assert response.status_code == 404

    def test_resume_from_project_snapshot(self, client, workspace):
        project_id = create_project(client)
        wait_for(client, project_id, awaiting_approval)
        client.post(f"/api/v1/projects/{project_id}/approve", json={})
        info = wait_for(client, project_id, finished)

        snapshot_path = os.path.join(workspace, f".snapshot_{project_id}.json")
        assert os.path.exists(snapshot_path)
        response = client.post("/api/v1/projects/resume", json={"snapshot_path": snapshot_path})
        assert response.status_code == 200

        resumed_id = response.json()["project_id"]
        resumed = wait_for(client, resumed_id, finished)
        assert resumed["outcome"] == "complete"
        assert resumed["total_scenes"] == info["total_scenes"]


class TestCredentials:
    """测试密钥管理和密钥缺失"""

    def test_no_credentials_is_bad_request(self, client, monkeypatch):
        monkeypatch.setattr(api, "get_text_service", lambda: KeyRotator([]))
        response = client.post("/api/v1/projects", json={"script": SAMPLE_SCRIPT})
        assert response.status_code == 400
        assert project_store.count() == 0

    def test_key_management(self, client, workspace):
        response = client.get("/api/v1/keys")
        assert response.json() == {"free_keys": [], "paid_key": None, "total": 0}

        response = client.post("/api/v1/keys/free", json={"key": "AIzaFreeKeyNumberOne"})
        assert response.status_code == 200
        assert response.json()["free_keys"] == ["AIza…rOne"]

        assert client.post("/api/v1/keys/free", json={"key": "AIzaFreeKeyNumberOne"}).status_code == 409

        response = client.put("/api/v1/keys/paid", json={"key": "AIzaPaidKeyForBilling"})
        assert response.json()["paid_key"] == "AIza…ling"

        stored = CredentialStore(os.path.join(workspace, "keys.json"))
        assert stored.free_keys == ["AIzaFreeKeyNumberOne"]
        assert stored.paid_key == "AIzaPaidKeyForBilling"

        assert client.delete("/api/v1/keys/free/5").status_code == 404
        assert client.delete("/api/v1/keys/free/0").json()["free_keys"] == []
        assert client.delete("/api/v1/keys/paid").json()["paid_key"] is None


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
