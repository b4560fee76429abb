import logging
from datetime import datetime
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Request, status
from fastapi.middleware.cors import CORSMiddleware

from .checkout import OrderReferralIntegration
from .config import LedgerSettings, get_settings
from .errors import (
    AlreadyRecorded,
    PointsLedgerError,
    ReferralCodeTaken,
    StorageUnavailable,
)
from .models import (
    AccountListResponse,
    AdjustPointsRequest,
    BalanceResponse,
    Customer,
    DeductPointsRequest,
    HealthReport,
    OrderProcessingResult,
    PointsMutationResponse,
    PointsRedemptionResult,
    ProcessOrderRequest,
    RecordReferralRequest,
    RecordReferralResponse,
    RedeemPointsRequest,
    ReferralAnalytics,
    ReferralSettings,
    ReferralValidation,
    RegisterCustomerRequest,
    RollbackOrderRequest,
    TransactionHistoryResponse,
    UpdateSettingsRequest,
    ValidateReferralRequest,
)
from .service import PointsLedgerService, create_storage

ERROR_STATUS = {
    AlreadyRecorded: status.HTTP_409_CONFLICT,
    ReferralCodeTaken: status.HTTP_409_CONFLICT,
    StorageUnavailable: status.HTTP_503_SERVICE_UNAVAILABLE,
}


def _http_error(e: PointsLedgerError) -> HTTPException:
    return HTTPException(
        status_code=ERROR_STATUS.get(type(e), status.HTTP_400_BAD_REQUEST),
        detail=e.to_dict(),
    )


def get_service(request: Request) -> PointsLedgerService:
    config: LedgerSettings = request.app.state.config
    return PointsLedgerService(
        request.app.state.storage,
        fallback_on_error=config.settings_fallback_on_error,
    )


def create_app(storage=None, config: Optional[LedgerSettings] = None) -> FastAPI:
    config = config or get_settings()
    logging.basicConfig(
        level=config.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    app = FastAPI(
        title=config.app_name,
        description="Referral and loyalty points ledger with an append-only transaction log",
        version=config.app_version,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.state.config = config
    app.state.storage = storage if storage is not None else create_storage(config)

    @app.get("/health", response_model=HealthReport, tags=["System"])
    def health_check(service: PointsLedgerService = Depends(get_service)) -> HealthReport:
        return service.health()

    # -----------------------------
    # Customers
    # -----------------------------
    @app.post("/customers", response_model=Customer, status_code=status.HTTP_201_CREATED, tags=["Customers"])
    def register_customer(
        request: RegisterCustomerRequest, service: PointsLedgerService = Depends(get_service)
    ) -> Customer:
        try:
            return service.register_customer(request.customer_id, request.referral_code)
        except PointsLedgerError as e:
            raise _http_error(e)

    # -----------------------------
    # Points
    # -----------------------------
    @app.get("/points/balance", response_model=BalanceResponse, tags=["Points"])
    def get_balance(customer_id: str, service: PointsLedgerService = Depends(get_service)) -> BalanceResponse:
        return service.get_balance(customer_id)

    @app.get("/points/transactions", response_model=TransactionHistoryResponse, tags=["Points"])
    def get_transactions(
        customer_id: str,
        limit: int = Query(default=50, ge=1, le=500),
        offset: int = Query(default=0, ge=0),
        service: PointsLedgerService = Depends(get_service),
    ) -> TransactionHistoryResponse:
        try:
            return service.balance.get_transactions(customer_id, limit, offset)
        except PointsLedgerError as e:
            raise _http_error(e)

    @app.post("/points/redeem", response_model=PointsRedemptionResult, tags=["Points"])
    def validate_redemption(
        request: RedeemPointsRequest, service: PointsLedgerService = Depends(get_service)
    ) -> PointsRedemptionResult:
        try:
            return service.referrals.validate_points_redemption(request.customer_id, request.points_to_redeem)
        except PointsLedgerError as e:
            raise _http_error(e)

    @app.post("/points/deduct", response_model=PointsMutationResponse, tags=["Points"])
    def deduct_points(
        request: DeductPointsRequest, service: PointsLedgerService = Depends(get_service)
    ) -> PointsMutationResponse:
        try:
            return service.referrals.deduct_points(request.customer_id, request.points, request.order_invoice_id)
        except PointsLedgerError as e:
            raise _http_error(e)

    @app.post("/admin/points/adjust", response_model=PointsMutationResponse, tags=["Admin"])
    def adjust_points(
        request: AdjustPointsRequest, service: PointsLedgerService = Depends(get_service)
    ) -> PointsMutationResponse:
        try:
            return service.adjust_points(request.customer_id, request.points_change, request.description)
        except PointsLedgerError as e:
            raise _http_error(e)

    @app.get("/admin/points/accounts", response_model=AccountListResponse, tags=["Admin"])
    def list_accounts(
        page: int = Query(default=1, ge=1),
        limit: int = Query(default=10, ge=1, le=100),
        service: PointsLedgerService = Depends(get_service),
    ) -> AccountListResponse:
        try:
            return service.list_accounts(page, limit)
        except PointsLedgerError as e:
            raise _http_error(e)

    # -----------------------------
    # Referrals
    # -----------------------------
    @app.post("/referral/validate", response_model=ReferralValidation, tags=["Referrals"])
    def validate_referral(
        request: ValidateReferralRequest, service: PointsLedgerService = Depends(get_service)
    ) -> ReferralValidation:
        return service.referrals.validate_referral_code(request.referral_code, request.customer_id)

    @app.post("/referral/record", response_model=RecordReferralResponse, tags=["Referrals"])
    def record_referral(
        request: RecordReferralRequest, service: PointsLedgerService = Depends(get_service)
    ) -> RecordReferralResponse:
        try:
            return service.referrals.record_referral_usage(
                request.referral_code,
                request.customer_id,
                request.order_invoice_id,
                points_used=request.points_used,
                points_discount=request.points_discount,
            )
        except PointsLedgerError as e:
            raise _http_error(e)

    @app.get("/admin/referral/settings", response_model=ReferralSettings, tags=["Admin"])
    def get_referral_settings(service: PointsLedgerService = Depends(get_service)) -> ReferralSettings:
        return service.settings.get_settings()

    @app.put("/admin/referral/settings", response_model=ReferralSettings, tags=["Admin"])
    def update_referral_settings(
        request: UpdateSettingsRequest, service: PointsLedgerService = Depends(get_service)
    ) -> ReferralSettings:
        try:
            return service.settings.update_settings(request)
        except PointsLedgerError as e:
            raise _http_error(e)

    @app.get("/admin/referral/analytics", response_model=ReferralAnalytics, tags=["Admin"])
    def referral_analytics(
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
        service: PointsLedgerService = Depends(get_service),
    ) -> ReferralAnalytics:
        try:
            return service.referral_analytics(start_date, end_date)
        except PointsLedgerError as e:
            raise _http_error(e)

    # -----------------------------
    # Checkout
    # -----------------------------
    @app.post("/checkout/process", response_model=OrderProcessingResult, tags=["Checkout"])
    def process_order(
        request: ProcessOrderRequest, service: PointsLedgerService = Depends(get_service)
    ) -> OrderProcessingResult:
        return OrderReferralIntegration(service).process_order(
            request.order, request.referral_code, request.points_to_redeem
        )

    @app.post("/checkout/rollback", response_model=Optional[PointsMutationResponse], tags=["Checkout"])
    def rollback_order(
        request: RollbackOrderRequest, service: PointsLedgerService = Depends(get_service)
    ) -> Optional[PointsMutationResponse]:
        try:
            return OrderReferralIntegration(service).rollback_order(
                request.order, request.points_used, request.points_awarded
            )
        except PointsLedgerError as e:
            raise _http_error(e)

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
