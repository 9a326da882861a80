from typing import Annotated, Optional

from fastapi import APIRouter, Depends, HTTPException, Request, Response, Security, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from photogen.api.schemas import (
    CreateGenerationIn,
    ExecuteResponse,
    GenerationOut,
    MergeIn,
    MergeResponse,
    ProgressResponse,
    PromptsResponse,
    RetryIn,
    UpdatePromptsIn,
    UpdatePromptsResponse,
)
from photogen.domain.errors import InvalidJobStateError, JobNotFoundError
from photogen.domain.models import utcnow
from photogen.domain.states import ItemStatus
from photogen.sandbox.store import SandboxStore

BEARER = HTTPBearer(auto_error=False)

def get_store(request: Request) -> SandboxStore:
    return request.app.state.store

async def verify_token(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Security(BEARER),
):
    expected = request.app.state.token
    if not expected:
        return
    if credentials is None or credentials.credentials != expected:
        raise HTTPException(status_code=401, detail="Invalid or missing token")

Store = Annotated[SandboxStore, Depends(get_store)]

router = APIRouter(dependencies=[Depends(verify_token)])

def _lookup(action):
    # Map store errors onto the status codes the real service uses
    try:
        return action()
    except JobNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except InvalidJobStateError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except IndexError:
        raise HTTPException(status_code=404, detail="Visual not found")

@router.post("/createGeneration", response_model=GenerationOut, status_code=status.HTTP_201_CREATED)
async def create_generation(body: CreateGenerationIn, store: Store):
    return store.create(body)

@router.get("/getGeneration/{gen_id}", response_model=GenerationOut)
async def get_generation(gen_id: str, store: Store):
    return _lookup(lambda: store.get(gen_id))

@router.post("/{gen_id}/merge", response_model=MergeResponse)
async def merge_prompts(gen_id: str, body: MergeIn, store: Store):
    gen = _lookup(lambda: store.merge(gen_id, body))
    return MergeResponse(
        generation_id=gen.id,
        merged_prompts=gen.merged_prompts,
        status=gen.status,
        merged_at=gen.updated_at,
    )

@router.get("/getPrompts/{gen_id}", response_model=PromptsResponse)
async def get_prompts(gen_id: str, store: Store):
    gen = _lookup(lambda: store.get(gen_id))
    return PromptsResponse(
        generation_id=gen.id,
        merged_prompts=gen.merged_prompts or {},
        can_edit=gen.status == "merged",
    )

@router.post("/updateMergedPrompts/{gen_id}", response_model=UpdatePromptsResponse)
async def update_merged_prompts(gen_id: str, body: UpdatePromptsIn, store: Store):
    gen = _lookup(lambda: store.update_prompts(gen_id, body.prompts))
    return UpdatePromptsResponse(merged_prompts=gen.merged_prompts, updated_at=gen.updated_at)

@router.post("/{gen_id}/execute", response_model=ExecuteResponse)
async def execute_generation(gen_id: str, store: Store):
    gen = _lookup(lambda: store.execute(gen_id))
    stats = {
        "completed": sum(1 for v in gen.visual_outputs if v.status == ItemStatus.COMPLETED),
        "failed": sum(1 for v in gen.visual_outputs if v.status == ItemStatus.FAILED),
        "total": len(gen.visual_outputs),
    }
    return ExecuteResponse(success=True, generation=gen, stats=stats)

@router.get("/getProgress/{gen_id}", response_model=ProgressResponse)
async def get_progress(gen_id: str, store: Store):
    return _lookup(lambda: store.progress(gen_id))

@router.post("/{gen_id}/visual/{index}/retry", response_model=GenerationOut)
async def retry_visual(gen_id: str, index: int, body: RetryIn, store: Store):
    return _lookup(lambda: store.retry(gen_id, index))

@router.post("/reset/{gen_id}", response_model=GenerationOut)
async def reset_generation(gen_id: str, store: Store):
    return _lookup(lambda: store.reset(gen_id))

@router.get("/download/{gen_id}")
async def download_generation(gen_id: str, store: Store):
    content = _lookup(lambda: store.archive(gen_id))
    return Response(
        content=content,
        media_type="application/zip",
        headers={"Content-Disposition": f'attachment; filename="generation-{gen_id}-{utcnow():%Y%m%d}.zip"'},
    )
