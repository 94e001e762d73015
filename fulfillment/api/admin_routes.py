"""
Admin API Routes - Refund moderation and coupon management.

Every route requires a bearer token with role=admin.
"""

from collections.abc import Awaitable, Callable
from uuid import UUID

from fastapi import APIRouter, BackgroundTasks, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from fulfillment.api.dependencies import get_outbox_dispatch, get_payment_provider, require_admin
from fulfillment.api.routes import refund_response
from fulfillment.db.session import get_read_db, get_write_db
from fulfillment.models.api import (
    CouponListResponse,
    CouponResponse,
    CreateCouponRequest,
    RefundListResponse,
    RefundResponse,
    RefundStatus,
    RejectRefundRequest,
)
from fulfillment.models.domain import CouponData, NewCoupon, Principal
from fulfillment.services.coupons import CouponService
from fulfillment.services.payment_provider import PaymentProvider
from fulfillment.services.refunds import RefundService

router = APIRouter(prefix="/v1/admin", tags=["admin"])

OutboxDispatch = Callable[[], Awaitable[int]]


# ============================================================================
# Refunds
# ============================================================================


@router.get("/refunds", response_model=RefundListResponse)
async def list_refunds(
    refund_status: RefundStatus | None = Query(None, alias="status"),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    admin: Principal = Depends(require_admin),
    db: AsyncSession = Depends(get_read_db),
) -> RefundListResponse:
    refunds, total = await RefundService(db).list_refunds(refund_status, page=page, limit=limit)
    return RefundListResponse(
        refunds=[refund_response(r) for r in refunds],
        total=total,
        page=page,
        limit=limit,
    )


@router.post("/refunds/{refund_id}/approve", response_model=RefundResponse)
async def approve_refund(
    refund_id: UUID,
    background_tasks: BackgroundTasks,
    admin: Principal = Depends(require_admin),
    db: AsyncSession = Depends(get_write_db),
    provider: PaymentProvider = Depends(get_payment_provider),
    dispatch: OutboxDispatch = Depends(get_outbox_dispatch),
) -> RefundResponse:
    """
    Reverse the payment, mark the order refunded and revoke its licenses.

    A gateway failure returns 502 and leaves the request open for retry.
    """
    refund = await RefundService(db, provider).approve(admin.user_id, refund_id)
    background_tasks.add_task(dispatch)
    return refund_response(refund)


@router.post("/refunds/{refund_id}/reject", response_model=RefundResponse)
async def reject_refund(
    refund_id: UUID,
    request: RejectRefundRequest,
    background_tasks: BackgroundTasks,
    admin: Principal = Depends(require_admin),
    db: AsyncSession = Depends(get_write_db),
    dispatch: OutboxDispatch = Depends(get_outbox_dispatch),
) -> RefundResponse:
    refund = await RefundService(db).reject(admin.user_id, refund_id, request.admin_note)
    background_tasks.add_task(dispatch)
    return refund_response(refund)


# ============================================================================
# Coupons
# ============================================================================


@router.post("/coupons", response_model=CouponResponse, status_code=status.HTTP_201_CREATED)
async def create_coupon(
    request: CreateCouponRequest,
    admin: Principal = Depends(require_admin),
    db: AsyncSession = Depends(get_write_db),
) -> CouponResponse:
    coupon = await CouponService(db).create_coupon(
        admin.user_id,
        NewCoupon(
            code=request.code,
            description=request.description,
            discount_kind=request.discount_kind,
            discount_value=request.discount_value,
            min_order_minor=request.min_order_minor,
            max_discount_minor=request.max_discount_minor,
            usage_limit=request.usage_limit,
            per_user_limit=request.per_user_limit,
            scope=request.scope,
            product_ids=tuple(request.product_ids) if request.product_ids else None,
            starts_at=request.starts_at,
            expires_at=request.expires_at,
        ),
    )
    return coupon_response(coupon)


@router.get("/coupons", response_model=CouponListResponse)
async def list_coupons(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    active: bool | None = Query(None),
    admin: Principal = Depends(require_admin),
    db: AsyncSession = Depends(get_read_db),
) -> CouponListResponse:
    coupons, total = await CouponService(db).list_coupons(page=page, limit=limit, active=active)
    return CouponListResponse(
        coupons=[coupon_response(c) for c in coupons],
        total=total,
        page=page,
        limit=limit,
    )


@router.post("/coupons/{coupon_id}/deactivate", response_model=CouponResponse)
async def deactivate_coupon(
    coupon_id: UUID,
    admin: Principal = Depends(require_admin),
    db: AsyncSession = Depends(get_write_db),
) -> CouponResponse:
    coupon = await CouponService(db).deactivate_coupon(coupon_id)
    return coupon_response(coupon)


def coupon_response(coupon: CouponData) -> CouponResponse:
    return CouponResponse(
        coupon_id=coupon.coupon_id,
        code=coupon.code,
        description=coupon.description,
        discount_kind=coupon.discount_kind,
        discount_value=coupon.discount_value,
        min_order_minor=coupon.min_order_minor,
        max_discount_minor=coupon.max_discount_minor,
        usage_limit=coupon.usage_limit,
        used_count=coupon.used_count,
        per_user_limit=coupon.per_user_limit,
        scope=coupon.scope,
        product_ids=list(coupon.product_ids) if coupon.product_ids else None,
        starts_at=coupon.starts_at,
        expires_at=coupon.expires_at,
        is_active=coupon.is_active,
    )
