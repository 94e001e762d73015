"""
API Routes - Buyer-facing fulfillment endpoints.

NO DICTIONARIES - All requests/responses use Pydantic models.

Routes translate HTTP to service calls and back. Failures propagate as
FulfillmentError and are rendered by the handler in fulfillment.main.
"""

from collections.abc import Awaitable, Callable
from uuid import UUID

from fastapi import APIRouter, BackgroundTasks, Depends, status
from fastapi.responses import FileResponse
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from fulfillment.api.dependencies import (
    get_content_store,
    get_current_user,
    get_outbox_dispatch,
    get_payment_provider,
)
from fulfillment.config import settings
from fulfillment.db.session import get_read_db, get_write_db
from fulfillment.models.api import (
    CheckoutRequest,
    CheckoutResponse,
    CouponValidateRequest,
    CouponValidateResponse,
    CreateOrderRequest,
    DownloadTokenRequest,
    DownloadTokenResponse,
    HealthResponse,
    LicenseListResponse,
    LicenseResponse,
    OrderItemResponse,
    OrderListResponse,
    OrderResponse,
    RefundRequestBody,
    RefundResponse,
    ReviewEligibilityResponse,
)
from fulfillment.models.domain import Delivery, LicenseData, OrderData, Principal, RefundData
from fulfillment.observability.logging import get_logger
from fulfillment.services.checkout import CheckoutService
from fulfillment.services.content_store import ContentStore, sanitize_filename
from fulfillment.services.coupons import CouponService
from fulfillment.services.downloads import DownloadService
from fulfillment.services.licenses import LicenseService
from fulfillment.services.orders import OrderService
from fulfillment.services.payment_provider import PaymentProvider
from fulfillment.services.refunds import RefundService

logger = get_logger(__name__)

router = APIRouter()

OutboxDispatch = Callable[[], Awaitable[int]]


# ============================================================================
# Coupons
# ============================================================================


@router.post("/v1/coupons/validate", response_model=CouponValidateResponse)
async def validate_coupon(
    request: CouponValidateRequest,
    principal: Principal = Depends(get_current_user),
    db: AsyncSession = Depends(get_read_db),
) -> CouponValidateResponse:
    """
    Quote a coupon against an order amount. Never consumes a use.

    A rejected coupon is a 400 whose detail names the failed check.
    """
    quote = await CouponService(db).validate_coupon(
        principal.user_id,
        request.code,
        request.order_amount_minor,
        scope=request.scope,
        product_ids=request.product_ids or None,
    )
    return CouponValidateResponse(
        valid=quote.valid,
        coupon_id=quote.coupon_id,
        code=quote.code,
        discount_kind=quote.discount_kind,
        discount_value=quote.discount_value,
        discount_minor=quote.discount_minor,
        final_amount_minor=quote.final_amount_minor,
    )


# ============================================================================
# Orders
# ============================================================================


@router.post("/v1/orders", response_model=OrderResponse, status_code=status.HTTP_201_CREATED)
async def create_order(
    request: CreateOrderRequest,
    principal: Principal = Depends(get_current_user),
    db: AsyncSession = Depends(get_write_db),
) -> OrderResponse:
    """Create a pending order from a cart, priced from the current catalog."""
    order = await OrderService(db).create_order(
        principal.user_id,
        [item.product_id for item in request.items],
        buyer_email=principal.email,
    )
    return order_response(order)


@router.get("/v1/orders", response_model=OrderListResponse)
async def list_orders(
    principal: Principal = Depends(get_current_user),
    db: AsyncSession = Depends(get_read_db),
) -> OrderListResponse:
    orders = await OrderService(db).list_orders_for_buyer(principal.user_id)
    return OrderListResponse(orders=[order_response(o) for o in orders])


@router.get("/v1/orders/{order_id}", response_model=OrderResponse)
async def get_order(
    order_id: UUID,
    principal: Principal = Depends(get_current_user),
    db: AsyncSession = Depends(get_read_db),
) -> OrderResponse:
    order = await OrderService(db).get_order(principal, order_id)
    return order_response(order)


@router.post("/v1/orders/{order_id}/confirm", response_model=CheckoutResponse)
async def confirm_order(
    order_id: UUID,
    request: CheckoutRequest,
    background_tasks: BackgroundTasks,
    principal: Principal = Depends(get_current_user),
    db: AsyncSession = Depends(get_write_db),
    provider: PaymentProvider = Depends(get_payment_provider),
    dispatch: OutboxDispatch = Depends(get_outbox_dispatch),
) -> CheckoutResponse:
    """
    Check out a pending order.

    Free and demo-mode orders come back paid. Otherwise the order stays
    pending and client_secret completes payment on the client; the gateway
    webhook confirms it.
    """
    service = CheckoutService(db, provider, demo_mode=settings.demo_mode)
    result = await service.checkout(principal, order_id, request.coupon_code)
    background_tasks.add_task(dispatch)
    return CheckoutResponse(
        order=order_response(result.order),
        client_secret=result.client_secret,
        demo_mode=result.demo_mode,
    )


@router.get("/v1/orders/{order_id}/refund", response_model=RefundResponse)
async def get_order_refund(
    order_id: UUID,
    principal: Principal = Depends(get_current_user),
    db: AsyncSession = Depends(get_read_db),
) -> RefundResponse:
    refund = await RefundService(db).get_refund_for_order(principal, order_id)
    return refund_response(refund)


# ============================================================================
# Licenses
# ============================================================================


@router.get("/v1/licenses", response_model=LicenseListResponse)
async def list_licenses(
    principal: Principal = Depends(get_current_user),
    db: AsyncSession = Depends(get_read_db),
) -> LicenseListResponse:
    licenses = await LicenseService(db).list_licenses(principal.user_id)
    return LicenseListResponse(licenses=[license_response(lic) for lic in licenses])


@router.get(
    "/v1/products/{product_id}/review-eligibility", response_model=ReviewEligibilityResponse
)
async def review_eligibility(
    product_id: UUID,
    principal: Principal = Depends(get_current_user),
    db: AsyncSession = Depends(get_read_db),
) -> ReviewEligibilityResponse:
    """Only holders of an active license may review a product."""
    eligible = await LicenseService(db).has_active_license(principal.user_id, product_id)
    return ReviewEligibilityResponse(product_id=product_id, eligible=eligible)


# ============================================================================
# Downloads
# ============================================================================


@router.post("/v1/downloads/token", response_model=DownloadTokenResponse)
async def request_download(
    request: DownloadTokenRequest,
    principal: Principal = Depends(get_current_user),
    db: AsyncSession = Depends(get_write_db),
) -> DownloadTokenResponse:
    """
    Deliver a purchased good.

    File products get a single-use token redeemable at download_url; link
    products get their delivery_url directly. Either way one access is counted.
    """
    delivery = await DownloadService(db).deliver(principal.user_id, request.license_id)
    return delivery_response(delivery)


@router.get("/v1/downloads/{token}")
async def redeem_download(
    token: str,
    db: AsyncSession = Depends(get_write_db),
    content_store: ContentStore = Depends(get_content_store),
) -> FileResponse:
    """
    Redeem a download token and stream the file.

    The token itself is the credential, so no bearer header is needed.
    """
    locator = await DownloadService(db).redeem(token, content_store)
    path = locator.path or content_store.resolve(locator.file_key)
    filename = sanitize_filename(f"{locator.title}{path.suffix}") or path.name
    return FileResponse(path, filename=filename, media_type="application/octet-stream")


# ============================================================================
# Refunds
# ============================================================================


@router.post(
    "/v1/refunds/request", response_model=RefundResponse, status_code=status.HTTP_201_CREATED
)
async def request_refund(
    request: RefundRequestBody,
    background_tasks: BackgroundTasks,
    principal: Principal = Depends(get_current_user),
    db: AsyncSession = Depends(get_write_db),
    dispatch: OutboxDispatch = Depends(get_outbox_dispatch),
) -> RefundResponse:
    refund = await RefundService(db).request(principal.user_id, request.order_id, request.reason)
    background_tasks.add_task(dispatch)
    return refund_response(refund)


# ============================================================================
# Health
# ============================================================================


@router.get("/health", response_model=HealthResponse)
async def health_check(db: AsyncSession = Depends(get_read_db)) -> HealthResponse:
    """
    Health check for load balancer.

    Reports degraded rather than failing when the database is unreachable.
    """
    database = "connected"
    try:
        await db.execute(text("SELECT 1"))
    except Exception as exc:
        logger.error("health_check_database_failed", error=str(exc))
        database = "disconnected"

    return HealthResponse(
        status="healthy" if database == "connected" else "degraded",
        database=database,
        demo_mode=settings.demo_mode,
        version=settings.api_version,
    )


# ============================================================================
# Response builders
# ============================================================================


def order_response(order: OrderData) -> OrderResponse:
    return OrderResponse(
        order_id=order.order_id,
        order_number=order.order_number,
        status=order.status,
        items=[
            OrderItemResponse(
                item_id=item.item_id,
                kind=item.kind,
                product_id=item.product_id,
                title=item.title,
                price_minor=item.price_minor,
                platform_fee_minor=item.platform_fee_minor,
                creator_payout_minor=item.creator_payout_minor,
            )
            for item in order.items
        ],
        subtotal_minor=order.subtotal_minor,
        discount_minor=order.discount_minor,
        coupon_code=order.coupon_code,
        total_minor=order.total_minor,
        currency=order.currency,
        payment_method=order.payment_method,
        paid_at=order.paid_at,
        created_at=order.created_at,
    )


def license_response(lic: LicenseData) -> LicenseResponse:
    return LicenseResponse(
        license_id=lic.license_id,
        license_key=lic.license_key,
        product_id=lic.product_id,
        order_id=lic.order_id,
        tier=lic.tier,
        access_count=lic.access_count,
        max_access=lic.max_access,
        download_count=lic.download_count,
        max_downloads=lic.max_downloads,
        is_active=lic.is_active,
        last_accessed_at=lic.last_accessed_at,
        created_at=lic.created_at,
    )


def delivery_response(delivery: Delivery) -> DownloadTokenResponse:
    credential = delivery.credential
    if credential is None:
        return DownloadTokenResponse(
            delivery_type=delivery.entitlement.delivery_type,
            delivery_url=delivery.entitlement.delivery_url,
        )
    return DownloadTokenResponse(
        delivery_type=delivery.entitlement.delivery_type,
        token=credential.token,
        expires_at=credential.expires_at,
        download_url=f"/v1/downloads/{credential.token}",
    )


def refund_response(refund: RefundData) -> RefundResponse:
    return RefundResponse(
        refund_id=refund.refund_id,
        order_id=refund.order_id,
        buyer_id=refund.buyer_id,
        reason=refund.reason,
        status=refund.status,
        amount_minor=refund.amount_minor,
        refund_ref=refund.refund_ref,
        admin_note=refund.admin_note,
        processed_by=refund.processed_by,
        processed_at=refund.processed_at,
        created_at=refund.created_at,
    )
