from datetime import datetime
from typing import Any, Optional

from fastapi import FastAPI, HTTPException, Query, status
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field

from .batch import BatchOperation, BatchOperationType
from .config import LedgerSettings, configure_logging
from .models import (
    HistoryFilters,
    PaginatedResult,
    RedemptionOption,
    RedemptionStatus,
    RewardCategory,
    RewardEntry,
    RewardType,
    new_id,
)
from .result import Result
from .service import LedgerService
from .sync import ConflictResolution

FAILURE_STATUS = {
    "validation": status.HTTP_422_UNPROCESSABLE_ENTITY,
    "state": status.HTTP_409_CONFLICT,
    "authorization": status.HTTP_403_FORBIDDEN,
    "not_found": status.HTTP_404_NOT_FOUND,
    "transport": status.HTTP_503_SERVICE_UNAVAILABLE,
    "partial_application": status.HTTP_500_INTERNAL_SERVER_ERROR,
}


class EntryRequest(BaseModel):
    points: int
    description: str
    category_id: str
    type: RewardType = RewardType.EARNED


class EntryUpdateRequest(EntryRequest):
    user_id: str


class CategoryRequest(BaseModel):
    name: str
    description: Optional[str] = None
    color: int = 0xFF9E9E9E
    icon: str = "label"


class RedeemRequest(BaseModel):
    option_id: str
    points: Optional[int] = None
    notes: Optional[str] = None


class OptionRequest(BaseModel):
    id: str
    title: str
    description: str
    required_points: int
    category_id: str
    is_active: bool = True
    expiry_date: Optional[datetime] = None
    image_url: Optional[str] = None


class TransitionRequest(BaseModel):
    user_id: str
    notes: Optional[str] = None


class BatchOperationRequest(BaseModel):
    type: BatchOperationType
    entry: Optional[RewardEntry] = None
    entry_id: Optional[str] = None
    user_id: Optional[str] = None

    def to_operation(self) -> BatchOperation:
        if self.entry is not None:
            return BatchOperation(self.type, entry=self.entry, entry_id=self.entry.id, user_id=self.entry.user_id)
        return BatchOperation(self.type, entry_id=self.entry_id, user_id=self.user_id)


class BatchRequest(BaseModel):
    operations: list[BatchOperationRequest] = Field(default_factory=list)


class SyncRequest(BaseModel):
    timeout_seconds: Optional[float] = Field(default=None, gt=0)


class ConflictRequest(BaseModel):
    resolution: ConflictResolution
    merged: Optional[dict[str, Any]] = None


def unwrap(result: Result) -> Any:
    """Return the success value or raise the HTTPException for the failure kind."""
    if result.is_ok:
        return result.value
    failure = result.failure
    raise HTTPException(
        status_code=FAILURE_STATUS.get(failure.kind, status.HTTP_400_BAD_REQUEST),
        detail={"kind": failure.kind, "message": str(failure)},
    )


def page_body(page: PaginatedResult) -> dict[str, Any]:
    return {
        "items": [item.to_dict() for item in page.items],
        "total_count": page.total_count,
        "page": page.page,
        "limit": page.limit,
        "total_pages": page.total_pages,
        "has_next_page": page.has_next_page,
        "has_previous_page": page.has_previous_page,
    }


def create_app(service: Optional[LedgerService] = None, settings: Optional[LedgerSettings] = None, **app_kwargs) -> FastAPI:
    settings = settings or (service.settings if service else LedgerSettings.from_env())
    ledger = service or LedgerService(settings=settings)

    app = FastAPI(
        title="Household Points Ledger API",
        description="Points, categories and redemptions for household rewards with offline sync",
        version="1.0.0",
        **app_kwargs,
    )
    app.state.ledger = ledger

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/health", tags=["System"])
    def health_check():
        return {"status": "healthy", "service": "points-ledger"}

    # Entries

    @app.post("/users/{user_id}/entries", status_code=status.HTTP_201_CREATED, tags=["Entries"])
    def add_entry(user_id: str, request: EntryRequest):
        entry = unwrap(RewardEntry.create(
            id=new_id(),
            user_id=user_id,
            points=request.points,
            description=request.description,
            category_id=request.category_id,
            created_at=ledger.clock(),
            type=request.type,
        ))
        return unwrap(ledger.add_entry(entry)).to_dict()

    @app.get("/users/{user_id}/entries", tags=["Entries"])
    def get_history(
        user_id: str,
        page: int = 1,
        limit: int = settings.default_page_size,
        category_id: Optional[str] = None,
        type: Optional[RewardType] = None,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
    ):
        filters = HistoryFilters(
            page=page, limit=limit, category_id=category_id, type=type, start_date=start_date, end_date=end_date
        )
        return page_body(unwrap(ledger.get_history(user_id, filters)))

    @app.put("/entries/{entry_id}", tags=["Entries"])
    def update_entry(entry_id: str, request: EntryUpdateRequest):
        stored = unwrap(ledger.get_entry(entry_id))
        entry = unwrap(RewardEntry.create(
            id=entry_id,
            user_id=request.user_id,
            points=request.points,
            description=request.description,
            category_id=request.category_id,
            created_at=stored.created_at,
            type=request.type,
        ))
        return unwrap(ledger.update_entry(entry)).to_dict()

    @app.delete("/entries/{entry_id}", status_code=status.HTTP_204_NO_CONTENT, tags=["Entries"])
    def delete_entry(entry_id: str, user_id: str):
        unwrap(ledger.delete_entry(entry_id, user_id))

    @app.get("/users/{user_id}/points", tags=["Entries"])
    def get_points(user_id: str):
        return {
            "user_id": user_id,
            "total_points": unwrap(ledger.get_total_points(user_id)),
            "available_points": unwrap(ledger.get_available_points(user_id)),
        }

    # Categories

    @app.get("/users/{user_id}/categories", tags=["Categories"])
    def get_categories(user_id: str):
        return [category.to_dict() for category in unwrap(ledger.get_categories(user_id))]

    @app.post("/users/{user_id}/categories", status_code=status.HTTP_201_CREATED, tags=["Categories"])
    def add_category(user_id: str, request: CategoryRequest):
        category = unwrap(RewardCategory.create(id=new_id(), **request.model_dump()))
        return unwrap(ledger.add_category(user_id, category)).to_dict()

    @app.put("/users/{user_id}/categories/{category_id}", tags=["Categories"])
    def update_category(user_id: str, category_id: str, request: CategoryRequest):
        category = unwrap(RewardCategory.create(id=category_id, **request.model_dump()))
        return unwrap(ledger.update_category(user_id, category)).to_dict()

    @app.delete("/users/{user_id}/categories/{category_id}", status_code=status.HTTP_204_NO_CONTENT, tags=["Categories"])
    def delete_category(user_id: str, category_id: str, reassign_to: str):
        unwrap(ledger.delete_category(user_id, category_id, reassign_to))

    # Redemption catalogue

    @app.get("/redemption-categories", tags=["Catalogue"])
    def get_redemption_categories():
        return [category.to_dict() for category in unwrap(ledger.get_redemption_categories())]

    @app.get("/redemption-options", tags=["Catalogue"])
    def get_redemption_options(category_id: Optional[str] = None):
        return [option.to_dict() for option in unwrap(ledger.get_redemption_options_by_category(category_id))]

    @app.post("/redemption-options", status_code=status.HTTP_201_CREATED, tags=["Catalogue"])
    def add_redemption_option(request: OptionRequest):
        option = unwrap(RedemptionOption.create(created_at=ledger.clock(), **request.model_dump()))
        return unwrap(ledger.add_redemption_option(option)).to_dict()

    # Redemptions

    @app.get("/users/{user_id}/can-redeem", tags=["Redemptions"])
    def can_redeem(user_id: str, points: int):
        return {"user_id": user_id, "points": points, "can_redeem": unwrap(ledger.can_redeem(user_id, points))}

    @app.post("/users/{user_id}/redemptions", status_code=status.HTTP_201_CREATED, tags=["Redemptions"])
    def redeem(user_id: str, request: RedeemRequest):
        return unwrap(ledger.redeem(user_id, request.option_id, request.points, request.notes)).to_dict()

    @app.get("/users/{user_id}/redemptions", tags=["Redemptions"])
    def get_redemptions(
        user_id: str,
        page: int = 1,
        limit: int = settings.default_page_size,
        status_filter: Optional[RedemptionStatus] = Query(default=None, alias="status"),
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
    ):
        history = ledger.get_redemption_history(user_id, page, limit, status_filter, start_date, end_date)
        return page_body(unwrap(history))

    @app.get("/redemptions/{transaction_id}", tags=["Redemptions"])
    def get_redemption(transaction_id: str):
        return unwrap(ledger.get_redemption(transaction_id)).to_dict()

    @app.post("/redemptions/{transaction_id}/complete", tags=["Redemptions"])
    def complete_redemption(transaction_id: str, request: TransitionRequest):
        return unwrap(ledger.complete_redemption(transaction_id, request.user_id, request.notes)).to_dict()

    @app.post("/redemptions/{transaction_id}/cancel", tags=["Redemptions"])
    def cancel_redemption(transaction_id: str, request: TransitionRequest):
        return unwrap(ledger.cancel_redemption(transaction_id, request.user_id, request.notes)).to_dict()

    @app.post("/redemptions/{transaction_id}/expire", tags=["Redemptions"])
    def expire_redemption(transaction_id: str, request: TransitionRequest):
        return unwrap(ledger.expire_redemption(transaction_id, request.user_id, request.notes)).to_dict()

    @app.get("/users/{user_id}/redemption-stats", tags=["Redemptions"])
    def get_redemption_stats(user_id: str):
        stats = unwrap(ledger.get_redemption_stats(user_id))
        return {
            **stats.to_dict(),
            "success_rate": stats.success_rate,
            "average_points_per_redemption": stats.average_points_per_redemption,
            "pending_transactions": stats.pending_transactions,
            "activity_span_days": stats.activity_span_days,
        }

    # Batches and sync

    @app.post("/batch", tags=["Batches"])
    def apply_batch(request: BatchRequest):
        operations = [operation.to_operation() for operation in request.operations]
        return [entry.to_dict() for entry in unwrap(ledger.apply_batch(operations))]

    @app.post("/users/{user_id}/sync", tags=["Sync"])
    def sync(user_id: str, request: Optional[SyncRequest] = None):
        timeout = request.timeout_seconds if request else None
        return unwrap(ledger.sync(user_id, timeout=timeout)).to_dict()

    @app.post("/users/{user_id}/conflicts/{entity_id}", tags=["Sync"])
    def resolve_conflict(user_id: str, entity_id: str, request: ConflictRequest):
        resolution = unwrap(ledger.resolve_conflict(user_id, entity_id, request.resolution, request.merged))
        return {"entity_id": entity_id, "resolution": resolution.value}

    return app


if __name__ == "__main__":
    import uvicorn

    settings = LedgerSettings.from_env()
    configure_logging(settings.log_level)
    uvicorn.run(create_app(settings=settings), host="0.0.0.0", port=8000)
