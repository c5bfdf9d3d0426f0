import asyncio
import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Request, WebSocket, WebSocketDisconnect, status
from pydantic import BaseModel
from starlette.websockets import WebSocketState

from ..core.errors import CredentialMissing
from ..core.pipeline import RecipePipeline
from ..core.recipe_store import RecipeStore, StoreEvent
from ..models.recipe import Recipe

log = logging.getLogger(__name__)
router = APIRouter(prefix="/api/v1")


class AddRecipeRequest(BaseModel):
    url: Optional[str] = None
    html: Optional[str] = None
    id: Optional[str] = None


class AddRecipeResponse(BaseModel):
    id: str


class CancelResponse(BaseModel):
    id: str
    cancelled: bool


def get_store(request: Request) -> RecipeStore:
    return request.app.state.store


def get_pipeline(request: Request) -> RecipePipeline:
    return request.app.state.pipeline


def _recipe_or_404(store: RecipeStore, recipe_id: str) -> Recipe:
    recipe = store.get(recipe_id)
    if recipe is None:
        raise HTTPException(status_code=404, detail=f"Recipe {recipe_id} not found")
    return recipe


@router.post("/recipes", status_code=status.HTTP_202_ACCEPTED, response_model=AddRecipeResponse)
async def add_recipe(
    body: AddRecipeRequest,
    store: RecipeStore = Depends(get_store),
    pipeline: RecipePipeline = Depends(get_pipeline),
):
    """Start adding a recipe; progress arrives over the websocket."""
    if not body.url and body.html is None:
        raise HTTPException(status_code=422, detail="Either url or html is required")
    if body.id and (body.id in store or pipeline.is_running(body.id)):
        raise HTTPException(status_code=409, detail=f"Recipe {body.id} already exists")
    try:
        pipeline.check_credentials()
    except CredentialMissing as e:
        raise HTTPException(status_code=503, detail=e.message)

    recipe_id = pipeline.start(body.url, body.html, body.id)
    log.info(f"➕ Started adding recipe {recipe_id} from {body.url or 'captured html'}")
    return AddRecipeResponse(id=recipe_id)


@router.get("/recipes", response_model=List[Recipe])
async def list_recipes(store: RecipeStore = Depends(get_store)):
    return store.all()


@router.get("/recipes/{recipe_id}", response_model=Recipe)
async def get_recipe(recipe_id: str, store: RecipeStore = Depends(get_store)):
    return _recipe_or_404(store, recipe_id)


@router.delete("/recipes/{recipe_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_recipe(
    recipe_id: str,
    store: RecipeStore = Depends(get_store),
    pipeline: RecipePipeline = Depends(get_pipeline),
):
    cancelled = await pipeline.cancel(recipe_id)
    if not store.delete(recipe_id) and not cancelled:
        raise HTTPException(status_code=404, detail=f"Recipe {recipe_id} not found")
    await store.save_async()


@router.post("/recipes/{recipe_id}/pin", response_model=Recipe)
async def pin_recipe(recipe_id: str, store: RecipeStore = Depends(get_store)):
    recipe = store.pin(recipe_id)
    if recipe is None:
        raise HTTPException(status_code=404, detail=f"Recipe {recipe_id} not found")
    await store.save_async()
    return recipe


@router.post("/recipes/{recipe_id}/cancel", response_model=CancelResponse)
async def cancel_recipe(recipe_id: str, pipeline: RecipePipeline = Depends(get_pipeline)):
    return CancelResponse(id=recipe_id, cancelled=await pipeline.cancel(recipe_id))


def _event_message(event: StoreEvent) -> dict:
    message = {"type": event.kind, "id": event.recipe_id}
    if event.recipe is not None:
        message["recipe"] = event.recipe.model_dump(mode="json", by_alias=True)
    return message


@router.websocket("/ws")
async def recipe_updates(ws: WebSocket, recipe_id: Optional[str] = None):
    """Send a snapshot of the store, then every upsert and delete as it happens."""
    await ws.accept()
    store: RecipeStore = ws.app.state.store
    log.info(f"🔗 Update stream connected{f' for {recipe_id}' if recipe_id else ''}")

    with store.subscribe() as events:
        recipes = store.all()
        if recipe_id:
            recipes = [r for r in recipes if r.id == recipe_id]
        await ws.send_json({
            "type": "snapshot",
            "recipes": [r.model_dump(mode="json", by_alias=True) for r in recipes],
        })

        async def pump_events():
            async for event in events:
                if recipe_id and event.recipe_id != recipe_id:
                    continue
                await ws.send_json(_event_message(event))

        async def wait_for_disconnect():
            try:
                while True:
                    await ws.receive_text()
            except WebSocketDisconnect:
                pass

        tasks = [asyncio.create_task(pump_events()), asyncio.create_task(wait_for_disconnect())]
        try:
            done, pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
            for task in done:
                if not task.cancelled() and task.exception() is not None:
                    log.error(f"💥 Update stream error: {task.exception()}")
        finally:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)

    if ws.client_state == WebSocketState.CONNECTED and ws.application_state == WebSocketState.CONNECTED:
        await ws.close()
    log.info("🔌 Update stream disconnected")
