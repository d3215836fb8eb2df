from __future__ import annotations

import asyncio
import logging
import threading
import uuid
from pathlib import Path
from typing import Dict, List, Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel

from labforge.bootstrap import build_app
from labforge.config_loader import workflow_options
from labforge.core.errors import ProviderError, UnauthorizedError, UserCancelledError
from labforge.core.ports import CancellationToken, ImagePart
from labforge.prompts.store import PromptNotFoundError
from labforge.workflow.pipeline import AGENTS, LabWorkflow, WorkflowError
from labforge.workflow.script import ImagesNotSupportedError, extract_script, generate_validation_script

logger = logging.getLogger(__name__)


class ProcessRequest(BaseModel):
    content: str
    prompt: Optional[str] = None
    prompt_key: Optional[str] = None
    operation_id: Optional[str] = None


class ImageIn(BaseModel):
    data: str  # base64
    mime_type: str = "image/png"


class ScriptRequest(BaseModel):
    instructions: str
    images: List[ImageIn] = []
    operation_id: Optional[str] = None


class WorkflowRequest(BaseModel):
    content: str
    agent_id: Optional[int] = None
    mode: Optional[str] = None
    creation_mode: Optional[str] = None
    num_labs: Optional[int] = None
    num_requirements: Optional[int] = None
    operation_id: Optional[str] = None


def create_app(
    config_path: Path,
    *,
    provider: Optional[str] = None,
    model: Optional[str] = None,
    repo_root: Optional[Path] = None,
) -> FastAPI:
    ctx = build_app(Path(config_path), repo_root, provider=provider, model=model)
    cfg = ctx["cfg"]
    service = ctx["service"]
    provider_kind = ctx["provider_config"].provider

    app = FastAPI()
    app.state.ctx = ctx
    app.state.operations: Dict[str, CancellationToken] = {}
    app.state.lock = threading.Lock()

    def _start(operation_id: Optional[str]) -> tuple[str, CancellationToken]:
        op_id = operation_id or uuid.uuid4().hex
        token = CancellationToken()
        with app.state.lock:
            if op_id in app.state.operations:
                raise HTTPException(status_code=409, detail=f"Operation {op_id} is already running")
            app.state.operations[op_id] = token
        return op_id, token

    def _finish(op_id: str) -> None:
        with app.state.lock:
            app.state.operations.pop(op_id, None)

    def _prompt(req: ProcessRequest) -> str:
        if req.prompt is not None:
            return req.prompt
        if req.prompt_key:
            return ctx["prompts"].get(req.prompt_key, provider_kind)
        raise HTTPException(status_code=400, detail="Either 'prompt' or 'prompt_key' is required")

    @app.exception_handler(ProviderError)
    async def provider_error(_request: Request, exc: ProviderError):
        if isinstance(exc, UserCancelledError):
            status = 409
        elif isinstance(exc, UnauthorizedError):
            status = 401
        else:
            status = 502
        return JSONResponse({"detail": exc.message or str(exc)}, status_code=status)

    @app.exception_handler(PromptNotFoundError)
    async def prompt_missing(_request: Request, exc: PromptNotFoundError):
        return JSONResponse({"detail": str(exc)}, status_code=404)

    @app.exception_handler(WorkflowError)
    @app.exception_handler(ImagesNotSupportedError)
    async def bad_request(_request: Request, exc: Exception):
        return JSONResponse({"detail": str(exc)}, status_code=400)

    @app.get("/api/config")
    def api_config():
        return {
            "provider": provider_kind.value,
            "model": service.model,
            "supports_images": service.supports_images,
            "stream": bool(cfg["runtime"]["stream"]),
            "agents": [{"id": a.id, "title": a.title, "modes": [m.value for m in a.modes]} for a in AGENTS],
        }

    @app.post("/api/process")
    async def api_process(req: ProcessRequest):
        prompt = _prompt(req)
        op_id, token = _start(req.operation_id)
        try:
            text = await service.call_once(prompt, req.content, token)
        finally:
            _finish(op_id)
        return {"operation_id": op_id, "text": text}

    @app.post("/api/stream")
    async def api_stream(req: ProcessRequest):
        prompt = _prompt(req)
        op_id, token = _start(req.operation_id)
        queue: asyncio.Queue = asyncio.Queue()
        done = object()

        async def produce():
            try:
                await service.call_streaming(prompt, req.content, queue.put_nowait, token)
            except ProviderError as e:
                queue.put_nowait(f"\n[error] {e.message or e}")
            finally:
                queue.put_nowait(done)

        async def gen():
            task = asyncio.create_task(produce())
            try:
                while True:
                    item = await queue.get()
                    if item is done:
                        break
                    yield item
                await task
            finally:
                # client went away before the end
                if not task.done():
                    token.cancel()
                    await asyncio.gather(task, return_exceptions=True)
                _finish(op_id)

        return StreamingResponse(gen(), media_type="text/plain", headers={"X-Operation-Id": op_id})

    @app.post("/api/script")
    async def api_script(req: ScriptRequest):
        prompt = ctx["prompts"].get("script", provider_kind)
        images = [ImagePart(data=i.data, mime_type=i.mime_type) for i in req.images]
        op_id, token = _start(req.operation_id)
        try:
            text = await generate_validation_script(service, prompt, req.instructions, images, token)
        finally:
            _finish(op_id)
        return {"operation_id": op_id, "text": text, "script": extract_script(text)}

    @app.post("/api/workflow")
    async def api_workflow(req: WorkflowRequest):
        opts = workflow_options(cfg)
        for key in ("mode", "creation_mode", "num_labs", "num_requirements"):
            val = getattr(req, key)
            if val is not None:
                opts[key] = val
        try:
            workflow = LabWorkflow(service, ctx["prompts"], provider_kind, history=ctx["history"],
                                   export_dir=ctx["paths"]["export_dir"], **opts)
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))

        op_id, token = _start(req.operation_id)
        try:
            if req.agent_id is not None:
                results = [await workflow.run_agent(req.agent_id, req.content, token)]
            else:
                results = await workflow.run_all(req.content, token)
        finally:
            _finish(op_id)
        return {
            "operation_id": op_id,
            "statuses": {str(k): v.value for k, v in workflow.statuses.items()},
            "results": [
                {
                    "agent_id": r.agent_id,
                    "status": r.status.value,
                    "output": r.output,
                    "labs": [{"title": lab.title, "content": lab.content} for lab in r.labs],
                    "files": [str(f) for f in r.files],
                }
                for r in results
            ],
        }

    @app.post("/api/cancel/{operation_id}")
    def api_cancel(operation_id: str):
        with app.state.lock:
            token = app.state.operations.get(operation_id)
        if token is None:
            raise HTTPException(status_code=404, detail="Unknown operation")
        token.cancel()
        logger.info("operation %s cancelled", operation_id)
        return {"operation_id": operation_id, "cancelled": True}

    return app


def run(
    *,
    config: Path,
    host: str = "127.0.0.1",
    port: int = 8000,
    provider: Optional[str] = None,
    model: Optional[str] = None,
) -> None:
    import uvicorn

    app = create_app(config, provider=provider, model=model)
    uvicorn.run(app, host=host, port=port)
