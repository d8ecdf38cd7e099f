from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.db import get_db
from app.core.deps import get_current_user, get_orchestrator, rate_limit
from app.core.results import ActionResult, VendorTransportError
from app.models.cert import Cert
from app.models.order import Order
from app.models.user import User
from app.schemas.orders import ActionOut, ApplyIn, CertOut, OrderOut, PayIn, UpdateDcvIn
from app.services.orchestrator import Orchestrator


router = APIRouter(prefix="/orders", tags=["Orders"], dependencies=[Depends(rate_limit)])


def _scope(user: User) -> Optional[int]:
    # admins act as the operator: no ownership filter, no credit ceiling
    return None if user.role == "admin" else user.id


def _respond(result: ActionResult) -> ActionOut:
    payload = result.as_payload(debug=settings.DEBUG)
    if not result.ok:
        raise HTTPException(status_code=400, detail=payload)
    return ActionOut(**payload)


async def _run(coro) -> ActionOut:
    try:
        result = await coro
    except VendorTransportError as e:
        detail = str(e) if settings.DEBUG else "CA is temporarily unavailable, please try again later"
        raise HTTPException(status_code=502, detail=detail)
    return _respond(result)


def _params(payload: ApplyIn, user: User) -> dict:
    params = payload.model_dump(exclude_none=True)
    if user.role != "admin":
        params.pop("user_id", None)
    return params


@router.post("/new", response_model=ActionOut)
async def apply_new(
    payload: ApplyIn,
    user: User = Depends(get_current_user),
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> ActionOut:
    return await _run(orchestrator.new(_params(payload, user), _scope(user)))


@router.post("/renew", response_model=ActionOut)
async def apply_renew(
    payload: ApplyIn,
    user: User = Depends(get_current_user),
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> ActionOut:
    return await _run(orchestrator.renew(_params(payload, user), _scope(user)))


@router.post("/reissue", response_model=ActionOut)
async def apply_reissue(
    payload: ApplyIn,
    user: User = Depends(get_current_user),
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> ActionOut:
    return await _run(orchestrator.reissue(_params(payload, user), _scope(user)))


@router.post("/pay", response_model=ActionOut)
async def pay(
    payload: PayIn,
    user: User = Depends(get_current_user),
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> ActionOut:
    return await _run(
        orchestrator.pay(payload.ids, _scope(user), commit=payload.commit, issue_verify=payload.issue_verify)
    )


@router.get("/{order_id}", response_model=OrderOut)
async def get_order(
    order_id: int,
    db: AsyncSession = Depends(get_db),
    user: User = Depends(get_current_user),
) -> OrderOut:
    stmt = select(Order).where(Order.id == order_id)
    if _scope(user) is not None:
        stmt = stmt.where(Order.user_id == user.id)
    order = (await db.execute(stmt)).scalar_one_or_none()
    if order is None:
        raise HTTPException(status_code=404, detail="Order not found")

    cert = await db.get(Cert, order.latest_cert_id) if order.latest_cert_id else None
    out = OrderOut.model_validate(order)
    out.latest_cert = CertOut.model_validate(cert) if cert else None
    return out


@router.post("/{order_id}/sync", response_model=ActionOut)
async def sync(
    order_id: int,
    user: User = Depends(get_current_user),
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> ActionOut:
    return await _run(orchestrator.sync(order_id, _scope(user)))


@router.post("/{order_id}/revalidate", response_model=ActionOut)
async def revalidate(
    order_id: int,
    user: User = Depends(get_current_user),
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> ActionOut:
    return await _run(orchestrator.revalidate(order_id, _scope(user), manual=True))


@router.post("/{order_id}/dcv", response_model=ActionOut)
async def update_dcv(
    order_id: int,
    payload: UpdateDcvIn,
    user: User = Depends(get_current_user),
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> ActionOut:
    return await _run(orchestrator.update_dcv(order_id, payload.method, _scope(user)))


@router.post("/{order_id}/remove-unverified-domains", response_model=ActionOut)
async def remove_unverified_domain(
    order_id: int,
    user: User = Depends(get_current_user),
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> ActionOut:
    return await _run(orchestrator.remove_unverified_domain(order_id, _scope(user)))


@router.post("/{order_id}/cancel", response_model=ActionOut)
async def commit_cancel(
    order_id: int,
    user: User = Depends(get_current_user),
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> ActionOut:
    return await _run(orchestrator.commit_cancel(order_id, _scope(user)))


@router.post("/{order_id}/revoke-cancel", response_model=ActionOut)
async def revoke_cancel(
    order_id: int,
    user: User = Depends(get_current_user),
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> ActionOut:
    return await _run(orchestrator.revoke_cancel(order_id, _scope(user)))


@router.delete("/{order_id}", response_model=ActionOut)
async def delete_unpaid(
    order_id: int,
    user: User = Depends(get_current_user),
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> ActionOut:
    return await _run(orchestrator.delete(order_id, _scope(user)))
