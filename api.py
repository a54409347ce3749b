# -*- coding: utf-8 -*-
"""
HTTP 接口层 - FastAPI

本模块把流水线编排器暴露为 RESTful API，作为外部审批方和进度观察方：
1. 创建项目并在后台运行（分析 → 等待审批 → 生成）
2. 查询状态、分析结果和已完成的场景提示词
3. 审批 / 暂停 / 恢复 / 取消
4. 重新生成单个场景、从进度快照继续
5. 管理免费/付费 API 密钥

核心设计：
- 每个项目一个 PipelineOrchestrator，运行在应用事件循环的后台任务中
- 使用内存 ProjectStore 保存项目，线程锁保护
- 编排器的状态错误映射为 409，密钥缺失映射为 400
"""
import asyncio
import os
import threading
import traceback
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field

from config import PipelineConfig
from errors import InvalidStateError, NoCredentialsError
from key_rotator import CredentialStore
from llm_client import LLMClient
from main import create_text_service
from models import GenerationPhase
from pipeline import PipelineOrchestrator
from snapshot_store import SnapshotStore


# ==================== 数据模型 ====================

class ProjectCreateRequest(BaseModel):
    """创建项目请求"""
    script: str = Field(..., min_length=1, description="旁白脚本全文")
    style: str = Field(default="", description="锁定的视觉风格")
    scene_duration: Optional[float] = Field(default=None, gt=0, description="目标场景时长（秒）")


class ProjectInfo(BaseModel):
    """项目状态"""
    project_id: str = Field(..., description="项目唯一标识符")
    phase: GenerationPhase = Field(..., description="当前阶段")
    current_scene: int = Field(default=0, description="已完成的场景数")
    total_scenes: int = Field(default=0, description="场景总数")
    outcome: Optional[str] = Field(default=None, description="complete / cancelled / error")
    error_message: Optional[str] = Field(default=None, description="错误信息（如果失败）")
    created_at: datetime = Field(default_factory=datetime.now, description="创建时间")
    updated_at: Optional[datetime] = Field(default=None, description="更新时间")


class ApproveRequest(BaseModel):
    """审批请求，characters 为空时原样批准"""
    characters: Optional[Dict[str, Dict[str, Any]]] = Field(default=None, description="修改后的人物身份")


class PromptsResponse(BaseModel):
    """场景提示词列表"""
    project_id: str
    prompts: List[Dict[str, Any]]
    is_complete: bool = False


class KeyRequest(BaseModel):
    key: str = Field(..., min_length=1, description="API 密钥")


class KeysResponse(BaseModel):
    """脱敏后的密钥列表"""
    free_keys: List[str]
    paid_key: Optional[str] = None
    total: int = 0


class ResumeRequest(BaseModel):
    snapshot_path: Optional[str] = Field(default=None, description="快照文件路径，默认使用配置中的路径")


class ErrorResponse(BaseModel):
    """错误响应模型"""
    detail: str = Field(..., description="错误详情")


# ==================== 项目存储 ====================

class ProjectStore:
    """
    内存项目存储

    使用线程锁保证线程安全
    """

    def __init__(self):
        self._projects: Dict[str, Dict[str, Any]] = {}
        self._lock = threading.Lock()

    def create_project(self, project_id: str, orchestrator: PipelineOrchestrator) -> Dict[str, Any]:
        with self._lock:
            project = {
                "project_id": project_id,
                "orchestrator": orchestrator,
                "task": None,
                "created_at": datetime.now(),
                "updated_at": datetime.now()
            }
            self._projects[project_id] = project
        return project

    def get_project(self, project_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            return self._projects.get(project_id)

    def touch(self, project_id: str) -> None:
        with self._lock:
            project = self._projects.get(project_id)
            if project:
                project["updated_at"] = datetime.now()

    def count(self) -> int:
        with self._lock:
            return len(self._projects)


# 全局项目存储实例
project_store = ProjectStore()


# ==================== FastAPI 应用 ====================

app = FastAPI(
    title="Scene Prompt API",
    description="场景提示词生成系统 - 从旁白脚本生成视频场景提示词",
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc"
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ==================== 工具函数 ====================

def get_config() -> PipelineConfig:
    return PipelineConfig.from_env()


def get_credential_store() -> CredentialStore:
    return CredentialStore(get_config().keys_path)


def get_text_service() -> LLMClient:
    """获取远程文本服务（测试中可替换）"""
    return create_text_service(get_config(), get_credential_store())


def get_snapshot_store(project_id: str) -> Optional[SnapshotStore]:
    """每个项目一个快照文件，与配置中的快照路径位于同一目录"""
    directory = os.path.dirname(get_config().snapshot_path) or "."
    return SnapshotStore(os.path.join(directory, f".snapshot_{project_id}.json"))


def build_orchestrator(project_id: str) -> PipelineOrchestrator:
    service = get_text_service()
    try:
        service.ensure_configured()
    except NoCredentialsError as e:
        raise HTTPException(status_code=400, detail=str(e))

    def on_progress(prompts):
        project_store.touch(project_id)

    def on_state_change(state):
        project_store.touch(project_id)

    return PipelineOrchestrator(
        service,
        config=get_config(),
        snapshot_store=get_snapshot_store(project_id),
        on_progress=on_progress,
        on_state_change=on_state_change
    )


async def run_project_background(project_id: str, coro) -> None:
    """后台运行项目，异常记录在编排器状态中"""
    try:
        await coro
    except Exception:
        print(f"[ERROR] Project {project_id} failed:")
        traceback.print_exc()
    finally:
        project_store.touch(project_id)


def start_project(project: Dict[str, Any], coro) -> None:
    project["task"] = asyncio.create_task(run_project_background(project["project_id"], coro))


def require_project(project_id: str) -> Dict[str, Any]:
    project = project_store.get_project(project_id)
    if not project:
        raise HTTPException(status_code=404, detail=f"项目不存在：{project_id}")
    return project


def project_info(project: Dict[str, Any]) -> ProjectInfo:
    state = project["orchestrator"].state
    return ProjectInfo(
        project_id=project["project_id"],
        phase=state.phase,
        current_scene=state.current_scene,
        total_scenes=state.total_scenes,
        outcome=state.outcome.value if state.outcome else None,
        error_message=state.error,
        created_at=project["created_at"],
        updated_at=project["updated_at"]
    )


def prompts_response(project: Dict[str, Any]) -> PromptsResponse:
    orchestrator = project["orchestrator"]
    snapshot = orchestrator.snapshot
    return PromptsResponse(
        project_id=project["project_id"],
        prompts=[p.to_dict() for p in orchestrator.prompts],
        is_complete=bool(snapshot and snapshot.is_complete)
    )


def keys_response(store: CredentialStore) -> KeysResponse:
    return KeysResponse(**store.masked())


# ==================== API 端点 ====================

@app.get("/", response_model=Dict[str, str])
async def root():
    """API 根路径"""
    return {
        "service": "Scene Prompt API",
        "version": "1.0.0",
        "status": "running",
        "docs": "/docs"
    }


@app.get("/api/v1/health")
async def health_check():
    """健康检查端点"""
    return {
        "status": "healthy",
        "timestamp": datetime.now().isoformat(),
        "active_projects": project_store.count()
    }


# ---------- 密钥管理 ----------

@app.get("/api/v1/keys", response_model=KeysResponse)
async def list_keys():
    return keys_response(get_credential_store())


@app.post("/api/v1/keys/free", response_model=KeysResponse,
          responses={409: {"model": ErrorResponse, "description": "密钥已存在"}})
async def add_free_key(request: KeyRequest):
    store = get_credential_store()
    if not store.add_free_key(request.key):
        raise HTTPException(status_code=409, detail="密钥为空或已存在")
    return keys_response(store)


@app.delete("/api/v1/keys/free/{index}", response_model=KeysResponse,
            responses={404: {"model": ErrorResponse, "description": "密钥不存在"}})
async def remove_free_key(index: int):
    store = get_credential_store()
    try:
        store.remove_free_key(index)
    except IndexError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return keys_response(store)


@app.put("/api/v1/keys/paid", response_model=KeysResponse)
async def set_paid_key(request: KeyRequest):
    store = get_credential_store()
    try:
        store.set_paid_key(request.key)
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))
    return keys_response(store)


@app.delete("/api/v1/keys/paid", response_model=KeysResponse)
async def clear_paid_key():
    store = get_credential_store()
    store.clear_paid_key()
    return keys_response(store)


# ---------- 项目 ----------

@app.post(
    "/api/v1/projects",
    response_model=ProjectInfo,
    responses={400: {"model": ErrorResponse, "description": "没有配置 API 密钥"}}
)
async def create_project(request: ProjectCreateRequest):
    """
    创建项目并在后台开始分析

    分析完成后项目进入 awaiting_approval，需要调用 approve 接口才会开始生成
    """
    project_id = uuid.uuid4().hex
    orchestrator = build_orchestrator(project_id)
    project = project_store.create_project(project_id, orchestrator)
    start_project(project, orchestrator.run(request.script, request.style, request.scene_duration))
    return project_info(project)


@app.post(
    "/api/v1/projects/resume",
    response_model=ProjectInfo,
    responses={404: {"model": ErrorResponse, "description": "快照不存在"}}
)
async def resume_from_snapshot(request: ResumeRequest):
    """从进度快照创建项目并继续生成"""
    snapshot_path = request.snapshot_path or get_config().snapshot_path
    snapshot = SnapshotStore(snapshot_path).load()
    if snapshot is None:
        raise HTTPException(status_code=404, detail=f"快照不存在：{snapshot_path}")

    project_id = uuid.uuid4().hex
    orchestrator = build_orchestrator(project_id)
    project = project_store.create_project(project_id, orchestrator)
    start_project(project, orchestrator.continue_from_progress(snapshot))
    return project_info(project)


@app.get("/api/v1/projects/{project_id}", response_model=ProjectInfo,
         responses={404: {"model": ErrorResponse, "description": "项目不存在"}})
async def get_project_status(project_id: str):
    return project_info(require_project(project_id))


@app.get("/api/v1/projects/{project_id}/analysis",
         responses={404: {"model": ErrorResponse, "description": "项目或分析结果不存在"}})
async def get_project_analysis(project_id: str):
    """获取分析结果（人物、年代、场景），供审批使用"""
    project = require_project(project_id)
    analysis = project["orchestrator"].analysis
    if analysis is None:
        raise HTTPException(status_code=404, detail="分析尚未完成")
    return analysis.to_dict()


@app.post("/api/v1/projects/{project_id}/approve", response_model=ProjectInfo,
          responses={409: {"model": ErrorResponse, "description": "当前阶段不能审批"}})
async def approve_project(project_id: str, request: ApproveRequest):
    project = require_project(project_id)
    try:
        project["orchestrator"].approve(request.characters)
    except InvalidStateError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))
    project_store.touch(project_id)
    return project_info(project)


@app.post("/api/v1/projects/{project_id}/pause", response_model=ProjectInfo,
          responses={409: {"model": ErrorResponse, "description": "当前阶段不能暂停"}})
async def pause_project(project_id: str):
    project = require_project(project_id)
    try:
        project["orchestrator"].pause()
    except InvalidStateError as e:
        raise HTTPException(status_code=409, detail=str(e))
    return project_info(project)


@app.post("/api/v1/projects/{project_id}/resume", response_model=ProjectInfo,
          responses={409: {"model": ErrorResponse, "description": "当前阶段不能恢复"}})
async def resume_project(project_id: str):
    project = require_project(project_id)
    try:
        project["orchestrator"].resume()
    except InvalidStateError as e:
        raise HTTPException(status_code=409, detail=str(e))
    return project_info(project)


@app.post("/api/v1/projects/{project_id}/cancel", response_model=ProjectInfo)
async def cancel_project(project_id: str):
    """请求取消，在下一个检查点生效"""
    project = require_project(project_id)
    project["orchestrator"].cancel()
    return project_info(project)


@app.get("/api/v1/projects/{project_id}/prompts", response_model=PromptsResponse)
async def get_project_prompts(project_id: str):
    return prompts_response(require_project(project_id))


@app.post(
    "/api/v1/projects/{project_id}/scenes/{index}/regenerate",
    response_model=PromptsResponse,
    responses={
        404: {"model": ErrorResponse, "description": "项目或场景不存在"},
        409: {"model": ErrorResponse, "description": "项目仍在运行"}
    }
)
async def regenerate_scene(project_id: str, index: int):
    """重新生成单个场景（index 从 0 开始）"""
    project = require_project(project_id)
    orchestrator = project["orchestrator"]
    try:
        await orchestrator.regenerate_scene(index, orchestrator.prompts)
    except InvalidStateError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except IndexError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except NoCredentialsError as e:
        raise HTTPException(status_code=400, detail=str(e))
    project_store.touch(project_id)
    return prompts_response(project)


# ==================== 启动配置 ====================

if __name__ == "__main__":
    import uvicorn

    # 生产环境建议使用：uvicorn api:app --host 0.0.0.0 --port 8000
    uvicorn.run(
        "api:app",
        host="0.0.0.0",
        port=8000,
        reload=True,
        log_level="info"
    )
