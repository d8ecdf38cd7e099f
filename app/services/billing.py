from __future__ import annotations

from typing import Optional

from loguru import logger
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.db import utcnow
from app.core.results import ActionResult
from app.models.cert import Cert, CertStatus
from app.models.order import Order
from app.models.product import Product
from app.models.user import User
from app.models.wallet import Transaction, WalletAccount


class BillingError(Exception):
    pass


class InsufficientBalance(BillingError):
    pass


async def _ensure_wallet_account(db: AsyncSession, user_id: int) -> None:
    res_u = await db.execute(select(User.id).where(User.id == user_id))
    if res_u.scalar_one_or_none() is None:
        raise BillingError(f"User {user_id} not found.")

    res = await db.execute(select(WalletAccount.user_id).where(WalletAccount.user_id == user_id))
    if res.scalar_one_or_none() is not None:
        return

    db.add(WalletAccount(user_id=user_id, balance_cents=0, credit_limit_cents=0))
    await db.flush()


async def _lock_wallet(db: AsyncSession, user_id: int) -> WalletAccount:
    await _ensure_wallet_account(db, user_id)
    res = await db.execute(select(WalletAccount).where(WalletAccount.user_id == user_id).with_for_update())
    return res.scalar_one()


async def _lock_order(db: AsyncSession, order_id: int, user_id: Optional[int] = None) -> Order:
    stmt = select(Order).where(Order.id == order_id).with_for_update()
    if user_id is not None:
        stmt = stmt.where(Order.user_id == user_id)
    res = await db.execute(stmt)
    order = res.scalar_one_or_none()
    if order is None or order.latest_cert_id is None:
        raise BillingError("Order or related data not found")
    return order


async def _latest_cert(db: AsyncSession, order: Order) -> Cert:
    cert = await db.get(Cert, order.latest_cert_id)
    if cert is None:
        raise BillingError("Order or related data not found")
    return cert


async def _post(
    db: AsyncSession,
    wallet: WalletAccount,
    order: Order,
    *,
    kind: str,
    amount_cents: int,
    standard_count: int = 0,
    wildcard_count: int = 0,
    remark: str = "",
    meta: Optional[dict] = None,
) -> Transaction:
    """Write one ledger row and move the wallet balance by ``amount_cents``."""
    before = int(wallet.balance_cents)
    after = before + int(amount_cents)

    await db.execute(
        update(WalletAccount)
        .where(WalletAccount.user_id == wallet.user_id)
        .values(balance_cents=after, updated_at=utcnow())
    )
    wallet.balance_cents = after

    entry = Transaction(
        user_id=wallet.user_id,
        order_id=order.id,
        type=kind,
        amount_cents=int(amount_cents),
        standard_count=standard_count,
        wildcard_count=wildcard_count,
        balance_before_cents=before,
        balance_after_cents=after,
        remark=remark or None,
        meta=meta or {},
    )
    db.add(entry)
    return entry


def order_transaction(order: Order, cert: Cert, product: Product) -> dict:
    """
    Signed charge for the order's unpaid cert.

    new/renew pay the period price plus every SAN above the product minimum.
    reissue only pays for SANs above what the order already bought. The
    returned counts are the purchased-slot deltas this charge introduces.
    """
    prices = product.price_for(cert.period or order.period)

    purchased_standard = max(order.purchased_standard_count, cert.standard_count, product.standard_min)
    purchased_wildcard = max(order.purchased_wildcard_count, cert.wildcard_count, product.wildcard_min)

    if cert.action == "reissue":
        base_standard = max(order.purchased_standard_count, product.standard_min)
        base_wildcard = max(order.purchased_wildcard_count, product.wildcard_min)
        price = 0
        standard_delta = purchased_standard - order.purchased_standard_count
        wildcard_delta = purchased_wildcard - order.purchased_wildcard_count
    else:
        base_standard = product.standard_min
        base_wildcard = product.wildcard_min
        price = prices["price"]
        standard_delta = purchased_standard
        wildcard_delta = purchased_wildcard

    extra_standard = max(0, cert.standard_count - base_standard)
    extra_wildcard = max(0, cert.wildcard_count - base_wildcard)

    amount = (
        price
        + extra_standard * prices["alternative_standard_price"]
        + extra_wildcard * prices["alternative_wildcard_price"]
    )

    remark = f"{cert.action} {product.name} {cert.period} months"
    if extra_standard or extra_wildcard:
        remark += f", extra SANs standard {extra_standard} wildcard {extra_wildcard}"

    return {
        "kind": cert.action,
        "amount_cents": -amount,
        "standard_count": standard_delta,
        "wildcard_count": wildcard_delta,
        "purchased_standard_count": purchased_standard,
        "purchased_wildcard_count": purchased_wildcard,
        "remark": remark,
    }


async def charge(db: AsyncSession, order_id: int, user_id: Optional[int] = None) -> ActionResult:
    """
    Charge an unpaid order and move its cert to ``pending``.

    ``user_id`` is set when a customer pays; only then is the credit ceiling
    enforced. Operator charges may push the balance below it.
    """
    try:
        order = await _lock_order(db, order_id, user_id)
        cert = await _latest_cert(db, order)
        if cert.status != CertStatus.UNPAID:
            raise BillingError("Order is not awaiting payment")

        product = await db.get(Product, order.product_id)
        if product is None:
            raise BillingError("Product not found")

        tx = order_transaction(order, cert, product)
        wallet = await _lock_wallet(db, order.user_id)

        if user_id is not None and wallet.balance_cents + tx["amount_cents"] < wallet.credit_limit_cents:
            raise InsufficientBalance("Insufficient balance")

        await _post(
            db,
            wallet,
            order,
            kind=tx["kind"],
            amount_cents=tx["amount_cents"],
            standard_count=tx["standard_count"],
            wildcard_count=tx["wildcard_count"],
            remark=tx["remark"],
            meta={"cert_id": cert.id},
        )

        order.purchased_standard_count = tx["purchased_standard_count"]
        order.purchased_wildcard_count = tx["purchased_wildcard_count"]
        order.amount_cents = int(order.amount_cents) - tx["amount_cents"]
        cert.amount_cents = -tx["amount_cents"]
        cert.status = CertStatus.PENDING

        await db.commit()
    except BillingError as e:
        await db.rollback()
        logger.info("charge for order {} rejected: {}", order_id, e)
        return ActionResult.failure(str(e), data={"order_id": order_id})
    except Exception:
        await db.rollback()
        raise

    logger.info("charged order {} {} cents", order_id, -tx["amount_cents"])
    return ActionResult.success({"order_id": order_id, "amount_cents": -tx["amount_cents"]})


async def _last_charge(db: AsyncSession, order_id: int) -> Optional[Transaction]:
    res = await db.execute(
        select(Transaction).where(Transaction.order_id == order_id).order_by(Transaction.id.desc()).limit(1)
    )
    return res.scalar_one_or_none()


async def cancel_pending(db: AsyncSession, order_id: int) -> ActionResult:
    """
    Undo a paid but not yet submitted cert.

    A pending renew or reissue refunds its charge and puts the previous cert
    back in place. A pending new order is refunded and marked cancelled.
    """
    try:
        order = await _lock_order(db, order_id)
        cert = await _latest_cert(db, order)
        if cert.status != CertStatus.PENDING:
            raise BillingError("Only pending orders can be cancelled this way")

        last = await _last_charge(db, order_id)
        if cert.amount_cents > 0:
            if last is None or last.amount_cents != -cert.amount_cents:
                raise BillingError("Last transaction does not match this certificate")

            wallet = await _lock_wallet(db, order.user_id)
            await _post(
                db,
                wallet,
                order,
                kind="cancel",
                amount_cents=cert.amount_cents,
                standard_count=-last.standard_count,
                wildcard_count=-last.wildcard_count,
                remark=f"cancel pending {cert.action}",
                meta={"cert_id": cert.id},
            )
            order.amount_cents = int(order.amount_cents) - cert.amount_cents
            order.purchased_standard_count = max(0, order.purchased_standard_count - last.standard_count)
            order.purchased_wildcard_count = max(0, order.purchased_wildcard_count - last.wildcard_count)

        if cert.action in ("renew", "reissue") and cert.last_cert_id:
            previous = await db.get(Cert, cert.last_cert_id)
            if previous is None:
                raise BillingError("Previous certificate not found")
            order.latest_cert_id = previous.id
            if cert.action == "renew":
                order.period = previous.period
            await db.delete(cert)
        else:
            cert.status = CertStatus.CANCELLED

        await db.commit()
    except BillingError as e:
        await db.rollback()
        return ActionResult.failure(str(e), data={"order_id": order_id})
    except Exception:
        await db.rollback()
        raise

    return ActionResult.success({"order_id": order_id})


async def refund_order(db: AsyncSession, order: Order, cert: Cert, remark: str = "cancel") -> Optional[Transaction]:
    """
    Refund everything paid on ``order`` after a vendor-side cancellation.

    Runs inside the caller's transaction; nothing is committed here.
    """
    amount = int(order.amount_cents)
    if amount <= 0:
        return None

    wallet = await _lock_wallet(db, order.user_id)
    entry = await _post(
        db,
        wallet,
        order,
        kind="cancel",
        amount_cents=amount,
        standard_count=-order.purchased_standard_count,
        wildcard_count=-order.purchased_wildcard_count,
        remark=remark,
        meta={"cert_id": cert.id},
    )
    order.amount_cents = 0
    order.purchased_standard_count = 0
    order.purchased_wildcard_count = 0
    return entry


async def delete_unpaid(db: AsyncSession, order_id: int, user_id: Optional[int] = None) -> ActionResult:
    """Drop an unpaid cert; a fresh order goes with it, renew/reissue fall back to the previous cert."""
    try:
        order = await _lock_order(db, order_id, user_id)
        cert = await _latest_cert(db, order)
        if cert.status != CertStatus.UNPAID:
            raise BillingError("Only unpaid certificates can be deleted")

        previous = await db.get(Cert, cert.last_cert_id) if cert.last_cert_id else None
        if previous is not None:
            order.latest_cert_id = previous.id
            if cert.action == "renew":
                order.period = previous.period
            await db.delete(cert)
        else:
            await db.delete(cert)
            await db.flush()
            await db.delete(order)

        await db.commit()
    except BillingError as e:
        await db.rollback()
        return ActionResult.failure(str(e), data={"order_id": order_id})
    except Exception:
        await db.rollback()
        raise

    return ActionResult.success({"order_id": order_id, "deleted_order": previous is None})
