import time
from functools import partial

import anyio  # SQLite 呼び出しをスレッドへオフロード
from fastapi import APIRouter, Depends, HTTPException, Request, status

from ..auth import get_current_owner
from ..logging import logger
from ..models.api import (
    AnalysisAddRequest,
    AnalysisMutationData,
    AnalysisMutationResponse,
    Pagination,
    RecentAnalysesData,
    RecentAnalysesRequest,
    RecentAnalysesResponse,
    SyncConflict,
    SyncData,
    SyncRequest,
    SyncResponse,
)
from ..models.history import AnalysisHistoryItem
from ..store.analyses import AnalysisSQLiteStore, DuplicateAnalysisError

router = APIRouter(tags=["analyses"])


def get_store(request: Request) -> AnalysisSQLiteStore:
    return request.app.state.store


def _to_item(req: AnalysisAddRequest) -> AnalysisHistoryItem:
    return AnalysisHistoryItem(
        id=req.id,
        type=req.type,
        input=req.input_text,
        result=req.result,
        timestamp=req.timestamp if req.timestamp is not None else int(time.time() * 1000),
        session_id=req.session_id,
        session_title=req.session_title,
        analysis_id=req.analysis_id,
    )


def _differs(local: AnalysisHistoryItem, remote: AnalysisHistoryItem) -> bool:
    return (
        local.timestamp != remote.timestamp
        or local.input != remote.input
        or local.result != remote.result
    )


@router.post(
    "/add",
    response_model=AnalysisMutationResponse,
    status_code=status.HTTP_201_CREATED,
    summary="解析結果を履歴に追加",
)
async def add_analysis(
    req: AnalysisAddRequest,
    owner_id: str = Depends(get_current_owner),
    store: AnalysisSQLiteStore = Depends(get_store),
) -> AnalysisMutationResponse:
    """履歴を 1 件追加する。同じ ID が既に存在する場合は 409 (DUPLICATE_ID) を返す。"""

    item = _to_item(req)
    try:
        stored = await anyio.to_thread.run_sync(
            partial(store.insert, owner_id, item, title=req.title, summary=req.summary)
        )
    except DuplicateAnalysisError as exc:
        logger.info("analysis_add_duplicate", owner_id=owner_id, item_id=item.id)
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={"error": "Analysis with this id already exists", "code": "DUPLICATE_ID"},
        ) from exc
    logger.info("analysis_added", owner_id=owner_id, item_id=item.id, analysis_type=item.type.value)
    return AnalysisMutationResponse(data=AnalysisMutationData(analysis=stored))


@router.post("/recent", response_model=RecentAnalysesResponse, summary="最近の解析履歴を取得")
async def recent_analyses(
    req: RecentAnalysesRequest,
    owner_id: str = Depends(get_current_owner),
    store: AnalysisSQLiteStore = Depends(get_store),
) -> RecentAnalysesResponse:
    items, total = await anyio.to_thread.run_sync(
        partial(
            store.list,
            owner_id,
            type=None if req.type == "all" else req.type,
            search=req.search,
            limit=req.limit,
            offset=req.offset,
            sort_by=req.sort_by,
            sort_order=req.sort_order,
        )
    )
    pagination = Pagination(
        total=total,
        limit=req.limit,
        offset=req.offset,
        has_more=req.offset + len(items) < total,
    )
    return RecentAnalysesResponse(data=RecentAnalysesData(analyses=items, pagination=pagination))


@router.put("/{analysis_id}", response_model=AnalysisMutationResponse, summary="解析履歴を更新")
async def update_analysis(
    analysis_id: str,
    req: AnalysisAddRequest,
    owner_id: str = Depends(get_current_owner),
    store: AnalysisSQLiteStore = Depends(get_store),
) -> AnalysisMutationResponse:
    if req.id != analysis_id:
        raise HTTPException(status_code=400, detail="id in body does not match the path")
    updated = await anyio.to_thread.run_sync(partial(store.update, owner_id, _to_item(req)))
    if updated is None:
        raise HTTPException(status_code=404, detail="Analysis not found")
    logger.info("analysis_updated", owner_id=owner_id, item_id=analysis_id)
    return AnalysisMutationResponse(data=AnalysisMutationData(analysis=updated))


@router.delete("/{analysis_id}", response_model=AnalysisMutationResponse, summary="解析履歴を削除")
async def delete_analysis(
    analysis_id: str,
    owner_id: str = Depends(get_current_owner),
    store: AnalysisSQLiteStore = Depends(get_store),
) -> AnalysisMutationResponse:
    """履歴を 1 件削除する。存在しない ID でも成功（deleted=0）として扱う。"""

    deleted = await anyio.to_thread.run_sync(partial(store.delete, owner_id, analysis_id))
    logger.info("analysis_deleted", owner_id=owner_id, item_id=analysis_id, deleted=deleted)
    return AnalysisMutationResponse(data=AnalysisMutationData(deleted=int(deleted)))


@router.delete("", response_model=AnalysisMutationResponse, summary="全ての解析履歴を削除")
async def delete_all_analyses(
    owner_id: str = Depends(get_current_owner),
    store: AnalysisSQLiteStore = Depends(get_store),
) -> AnalysisMutationResponse:
    deleted = await anyio.to_thread.run_sync(partial(store.delete_all, owner_id))
    logger.info("analyses_cleared", owner_id=owner_id, deleted=deleted)
    return AnalysisMutationResponse(data=AnalysisMutationData(deleted=deleted))


@router.post("/sync", response_model=SyncResponse, summary="ローカル履歴とサーバー履歴を同期")
async def sync_analyses(
    req: SyncRequest,
    owner_id: str = Depends(get_current_owner),
    store: AnalysisSQLiteStore = Depends(get_store),
) -> SyncResponse:
    """ローカル履歴を受け取り、サーバーに無いものを保存して統合済みの履歴を返す。

    - `last_sync_timestamp` 指定時は、それ以降に作成されたリモート履歴のみを比較対象にする
    - 同じ ID で timestamp/input/result が異なるものは競合として返す（自動では解決しない）
    - 統合結果は ID ごとに timestamp が新しい方を採用し、新しい順に並べる
    """

    remote_items, _ = await anyio.to_thread.run_sync(
        partial(
            store.list,
            owner_id,
            limit=10_000,
            created_after_ms=req.last_sync_timestamp,
        )
    )
    remote_by_id = {item.id: item for item in remote_items}

    conflicts = [
        SyncConflict(local=local, remote=remote_by_id[local.id])
        for local in req.local_history
        if local.id in remote_by_id and _differs(local, remote_by_id[local.id])
    ]

    uploaded = 0
    for local in req.local_history:
        if local.id in remote_by_id:
            continue
        try:
            await anyio.to_thread.run_sync(partial(store.insert, owner_id, local))
        except DuplicateAnalysisError:
            # last_sync_timestamp より前に保存済みのアイテム。
            continue
        uploaded += 1

    local_ids = {item.id for item in req.local_history}
    downloaded = sum(1 for item in remote_items if item.id not in local_ids)

    merged: dict[str, AnalysisHistoryItem] = dict(remote_by_id)
    for local in req.local_history:
        existing = merged.get(local.id)
        if existing is None or local.timestamp > existing.timestamp:
            merged[local.id] = local
    merged_history = sorted(merged.values(), key=lambda item: item.timestamp, reverse=True)

    logger.info(
        "analyses_synced",
        owner_id=owner_id,
        uploaded=uploaded,
        downloaded=downloaded,
        conflicts=len(conflicts),
    )
    return SyncResponse(
        data=SyncData(
            uploaded=uploaded,
            downloaded=downloaded,
            conflicts=conflicts,
            merged_history=merged_history,
        )
    )
