from contextlib import asynccontextmanager
from typing import Optional
from uuid import UUID

from fastapi import FastAPI, HTTPException, status
from fastapi.middleware.cors import CORSMiddleware

from .config import HoneySettings, configure_logging, get_settings
from .errors import (
    AlreadyAppliedError,
    ApplicationNotFoundError,
    ApplicationNotPendingError,
    BusyError,
    ContactInfoDetectedError,
    HoneyDropsError,
    InsufficientBalanceError,
    InvalidAmountError,
    JobNotFoundError,
    JobNotOpenError,
    NotAuthorizedError,
    PaymentConflictError,
)
from .models import (
    Application,
    ApplicationResponse,
    BalanceResponse,
    DecisionRequest,
    DecisionResponse,
    PreviewRequest,
    ReconcileReport,
    ScanResult,
    SubmitApplicationRequest,
    TopUpRequest,
    TransactionHistoryResponse,
    TransactionType,
    UpdateApplicationRequest,
    WithdrawRequest,
)
from .service import ApplicationService
from .storage import InMemoryJobCatalog, InMemoryStorage

_STATUS_BY_ERROR = [
    (InsufficientBalanceError, status.HTTP_402_PAYMENT_REQUIRED),
    (ContactInfoDetectedError, status.HTTP_422_UNPROCESSABLE_ENTITY),
    (NotAuthorizedError, status.HTTP_403_FORBIDDEN),
    (ApplicationNotFoundError, status.HTTP_404_NOT_FOUND),
    (JobNotFoundError, status.HTTP_404_NOT_FOUND),
    (JobNotOpenError, status.HTTP_409_CONFLICT),
    (ApplicationNotPendingError, status.HTTP_409_CONFLICT),
    (AlreadyAppliedError, status.HTTP_409_CONFLICT),
    (PaymentConflictError, status.HTTP_409_CONFLICT),
    (InvalidAmountError, status.HTTP_400_BAD_REQUEST),
]


def to_http_error(exc: HoneyDropsError) -> HTTPException:
    if isinstance(exc, BusyError):
        headers = {"Retry-After": str(max(1, round(exc.retry_after or 1)))}
        return HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc), headers=headers)
    for error_type, status_code in _STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            return HTTPException(status_code=status_code, detail=str(exc))
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Ledger error")


def create_app(
    service: Optional[ApplicationService] = None,
    settings: Optional[HoneySettings] = None,
    root_path: str = "",
) -> FastAPI:
    settings = settings or get_settings()
    service = service or ApplicationService(InMemoryJobCatalog(), InMemoryStorage(), settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        configure_logging(verbose=settings.verbose, log_json=settings.log_json)
        yield

    app = FastAPI(
        title="Honey Drops Ledger API",
        description="Bidding-fee ledger for job applications with automatic refunds for losing bids",
        version="1.0.0",
        root_path=root_path,
        lifespan=lifespan,
    )
    app.state.service = service

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/health", tags=["System"])
    def health_check():
        return {"status": "healthy", "service": "honeydrops-ledger"}

    @app.post("/applications/preview", response_model=ScanResult, tags=["Applications"])
    def preview_cover_letter(request: PreviewRequest) -> ScanResult:
        return service.guard.preview(request.text)

    @app.post("/applications", response_model=ApplicationResponse, status_code=status.HTTP_201_CREATED, tags=["Applications"])
    def submit_application(request: SubmitApplicationRequest) -> ApplicationResponse:
        try:
            return service.submit(
                request.job_id,
                request.applicant_id,
                request.cover_letter_text,
                request.proposed_rate,
                application_id=request.application_id,
            )
        except HoneyDropsError as e:
            raise to_http_error(e)

    @app.get("/applications/{application_id}", response_model=Application, tags=["Applications"])
    def get_application(application_id: UUID) -> Application:
        try:
            return service.get_application(application_id)
        except ApplicationNotFoundError:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Application {application_id} not found")

    @app.patch("/applications/{application_id}", response_model=Application, tags=["Applications"])
    def update_application(application_id: UUID, request: UpdateApplicationRequest) -> Application:
        try:
            return service.update(
                application_id,
                request.applicant_id,
                cover_letter_text=request.cover_letter_text,
                proposed_rate=request.proposed_rate,
            )
        except HoneyDropsError as e:
            raise to_http_error(e)

    @app.post("/applications/{application_id}/accept", response_model=DecisionResponse, tags=["Applications"])
    def accept_application(application_id: UUID, request: DecisionRequest) -> DecisionResponse:
        try:
            return service.accept(application_id, request.caller_id)
        except HoneyDropsError as e:
            raise to_http_error(e)

    @app.post("/applications/{application_id}/reject", response_model=DecisionResponse, tags=["Applications"])
    def reject_application(application_id: UUID, request: DecisionRequest) -> DecisionResponse:
        try:
            return service.reject(application_id, request.caller_id)
        except HoneyDropsError as e:
            raise to_http_error(e)

    @app.post("/applications/{application_id}/withdraw", response_model=DecisionResponse, tags=["Applications"])
    def withdraw_application(application_id: UUID, request: WithdrawRequest) -> DecisionResponse:
        try:
            return service.withdraw(application_id, request.applicant_id)
        except HoneyDropsError as e:
            raise to_http_error(e)

    @app.get("/jobs/{job_id}/applications", response_model=list[Application], tags=["Jobs"])
    def list_job_applications(job_id: UUID, caller_id: UUID) -> list[Application]:
        try:
            return service.list_for_job(job_id, caller_id)
        except HoneyDropsError as e:
            raise to_http_error(e)

    @app.get("/users/{user_id}/applications", response_model=list[Application], tags=["Users"])
    def list_user_applications(user_id: UUID) -> list[Application]:
        return service.list_for_applicant(user_id)

    @app.get("/users/{user_id}/balance", response_model=BalanceResponse, tags=["Users"])
    def get_user_balance(user_id: UUID) -> BalanceResponse:
        return BalanceResponse(user_id=user_id, balance=service.get_balance(user_id))

    @app.get("/users/{user_id}/transactions", response_model=TransactionHistoryResponse, tags=["Users"])
    def get_user_transactions(
        user_id: UUID,
        type: Optional[TransactionType] = None,
        limit: int = 50,
    ) -> TransactionHistoryResponse:
        transactions = service.balances.get_transactions(user_id, type, limit)
        return TransactionHistoryResponse(
            user_id=user_id,
            transactions=transactions,
            total_count=len(transactions),
            current_balance=service.get_balance(user_id),
        )

    @app.post("/users/{user_id}/top-ups", response_model=BalanceResponse, status_code=status.HTTP_201_CREATED, tags=["Users"])
    def top_up_balance(user_id: UUID, request: TopUpRequest) -> BalanceResponse:
        try:
            balance = service.balances.top_up(user_id, request.amount, request.payment_id)
        except HoneyDropsError as e:
            raise to_http_error(e)
        return BalanceResponse(user_id=balance.user_id, balance=balance.amount)

    @app.post("/admin/reconcile", response_model=ReconcileReport, tags=["Admin"])
    def reconcile(job_id: Optional[UUID] = None) -> ReconcileReport:
        return service.reconcile(job_id)

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
