"""
Certificate lifecycle orchestration.

Cert state machine::

    unpaid -> pending -> processing -> approving -> active
    processing | approving | active -> cancelling -> cancelled
    active -> revoked
    renewed, reissued, replaced, expired, failed are terminal

Every public method returns an :class:`ActionResult`. Vendor network calls
never run while a row lock is held: state is read in one session, the vendor
is called, and the outcome is written back in a fresh session after
re-checking the cert status. :class:`VendorTransportError` is left to
propagate so the task queue can retry.
"""

from __future__ import annotations

import functools
from datetime import timedelta
from typing import Any, Iterable, List, Optional, Tuple
from uuid import uuid4

from loguru import logger
from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.config import Settings
from app.core.db import utcnow
from app.core.results import ActionResult, ApiResult, InvalidState, NotFound, OrchestratorError
from app.core.store import CounterStore
from app.integrations.vendors import VendorRegistry
from app.models.cert import Cert, CertStatus, csr_hash
from app.models.order import Order
from app.models.product import Product
from app.models.user import User
from app.models.validation import DomainValidationRecord
from app.schemas.certs import ApplyResult, CertSnapshot, DcvUpdate, VendorRequest
from app.services import billing
from app.services import csr as csr_util
from app.services import domains as domain_util
from app.services import validator
from app.services.dcv import generate_dcv, generate_unique_value, generate_validation, merge_dcv, merge_validation
from app.services.tasks import TaskQueue
from app.services.throttle import check_duplicate
from app.services.verify_client import DnsVerifyClient


SYNC_DELAY = 5
CANCEL_DELAY = 120

# forward-only ordering for the statuses a vendor may report while in flight
PROGRESS = {CertStatus.PROCESSING: 1, CertStatus.APPROVING: 2, CertStatus.ACTIVE: 3}
CANCELLABLE = (CertStatus.PROCESSING, CertStatus.APPROVING, CertStatus.ACTIVE)


class Rejected(OrchestratorError):
    """A request that cannot go ahead; carries field level detail."""

    def __init__(self, message: str, errors: Any = None):
        super().__init__(message)
        self.errors = errors


def _guarded(fn):
    # business refusals become failed results at the public boundary
    @functools.wraps(fn)
    async def wrapper(self, *args, **kwargs) -> ActionResult:
        try:
            return await fn(self, *args, **kwargs)
        except Rejected as e:
            return ActionResult.failure(str(e), errors=e.errors, public=True)
        except (NotFound, InvalidState) as e:
            return ActionResult.failure(str(e))

    return wrapper


def _subject_ids(values: Any) -> List[int]:
    if isinstance(values, (int, str)):
        values = str(values).split(",")
    return [int(v) for v in values if str(v).strip()]


class Orchestrator:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        registry: VendorRegistry,
        queue: TaskQueue,
        settings: Settings,
        store: CounterStore,
        verify_client: Optional[DnsVerifyClient] = None,
    ):
        self.session_factory = session_factory
        self.registry = registry
        self.queue = queue
        self.settings = settings
        self.store = store
        self.verify_client = verify_client

    # loading

    async def _load(
        self,
        db: AsyncSession,
        order_id: int,
        user_id: Optional[int] = None,
        lock: bool = False,
    ) -> Tuple[Order, Cert, Product]:
        stmt = select(Order).where(Order.id == order_id)
        if user_id is not None:
            stmt = stmt.where(Order.user_id == user_id)
        if lock:
            stmt = stmt.with_for_update()
        order = (await db.execute(stmt)).scalar_one_or_none()
        if order is None or order.latest_cert_id is None:
            raise NotFound("Order or related data not found")

        cert = await db.get(Cert, order.latest_cert_id, with_for_update=lock)
        product = order.product
        if cert is None or product is None:
            raise NotFound("Order or related data not found")
        return order, cert, product

    async def _previous(self, db: AsyncSession, cert: Cert) -> Optional[Cert]:
        return await db.get(Cert, cert.last_cert_id) if cert.last_cert_id else None

    # parameter assembly

    @staticmethod
    def _clean(params: dict) -> dict:
        return {k: v for k, v in params.items() if v is not None}

    async def _base(self, db: AsyncSession, params: dict, user_id: Optional[int]) -> dict:
        """Resolve user, product and (for renew/reissue) the order being extended."""
        ctx: dict = {"last_order": None, "last_cert": None, "private_key": None}

        if params["action"] == "new":
            owner_id = user_id or int(params.get("user_id") or 0)
            if await db.get(User, owner_id) is None:
                raise NotFound("User not found")
            product = await db.get(Product, int(params.get("product_id") or 0))
            if product is None or not product.status:
                raise NotFound("Product not found or disabled")
            ctx.update(user_id=owner_id, product=product)
            return ctx

        if not params.get("order_id"):
            raise Rejected("order_id is required", {"order_id": "order_id is required"})

        order, last_cert, product = await self._load(db, int(params["order_id"]), user_id)
        if last_cert.status != CertStatus.ACTIVE:
            raise InvalidState("Order status error")
        if params["action"] == "renew" and not product.renew:
            raise Rejected("Product does not support renewal")
        if params["action"] == "renew" and not product.status:
            raise Rejected("Product is disabled")
        if params["action"] == "reissue" and not product.reissue:
            raise Rejected("Product does not support reissue")

        # keep the old key when the customer resubmits the same CSR
        if csr_util.match_key(params.get("csr") or "", last_cert.private_key or ""):
            ctx["private_key"] = last_cert.private_key

        ctx.update(user_id=order.user_id, product=product, last_order=order, last_cert=last_cert)
        return ctx

    @staticmethod
    def _apply_information(params: dict, product: Product) -> dict:
        if product.validation_type == "dv":
            params.pop("organization", None)
            if not isinstance(params.get("contact"), dict):
                params.pop("contact", None)
        elif params["action"] != "reissue":
            if not isinstance(params.get("organization"), dict):
                raise Rejected("Invalid organization information", {"organization": "organization is required"})
            if not isinstance(params.get("contact"), dict):
                raise Rejected("Invalid contact information", {"contact": "contact is required"})
        return params

    async def _cert_fields(self, db: AsyncSession, params: dict, ctx: dict) -> dict:
        product: Product = ctx["product"]
        last_cert: Optional[Cert] = ctx["last_cert"]

        domains = domain_util.convert_to_unicode_domains(params.get("domains") or "")
        names = domain_util.add_gift_domain(domains) if product.gift_root_domain else domains
        sans = domain_util.get_sans_from_domains(names, product.gift_root_domain)
        standard, wildcard = sans["standard_count"], sans["wildcard_count"]

        if last_cert is not None:
            if not product.add_san:
                if standard > last_cert.standard_count:
                    raise Rejected("Standard domain count exceeds the original certificate")
                if wildcard > last_cert.wildcard_count:
                    raise Rejected("Wildcard domain count exceeds the original certificate")

            if not product.replace_san:
                previous = domain_util.split(last_cert.alternative_names)
                names = domain_util.join(domain_util.unique(domain_util.split(names) + previous))
                count_errors = validator.validate_sans_max_count(product, names)
                if count_errors:
                    raise Rejected("SAN count exceeds product limit", {"domains": {"count": count_errors}})

                added = [d for d in domain_util.split(names) if d not in previous]
                added_sans = domain_util.get_sans_from_domains(domain_util.join(added), product.gift_root_domain)
                standard = added_sans["standard_count"] + last_cert.standard_count
                wildcard = added_sans["wildcard_count"] + last_cert.wildcard_count

        organization = params.get("organization") if isinstance(params.get("organization"), dict) else None
        try:
            generated = csr_util.prepare(
                domains=domain_util.split(names),
                csr=params.get("csr"),
                csr_generate=bool(params.get("csr_generate")),
                encryption=params.get("encryption"),
                private_key=ctx["private_key"],
                organization=organization,
            )
            encryption_alg, encryption_bits = csr_util.key_info(generated.csr)
        except csr_util.CsrError as e:
            raise Rejected(str(e), {"csr": str(e)}) from e

        if not product.reuse_csr:
            used = await db.execute(select(Cert.id).where(Cert.csr_md5 == csr_hash(generated.csr)).limit(1))
            if used.scalar_one_or_none() is not None:
                raise Rejected("CSR already used", {"csr": "CSR already used"})

        unique_value = None
        if product.ca == "sectigo":
            unique_value = params.get("unique_value") or generate_unique_value()

        dcv = generate_dcv(product.ca, params.get("validation_method") or "", generated.csr, unique_value or "")
        return {
            "action": params["action"],
            "channel": params.get("channel") or "admin",
            "refer_id": params.get("refer_id") or uuid4().hex,
            "unique_value": unique_value,
            "common_name": domain_util.split(names)[0],
            "alternative_names": names,
            "standard_count": standard,
            "wildcard_count": wildcard,
            "csr": generated.csr,
            "private_key": generated.private_key or None,
            "encryption_alg": encryption_alg,
            "encryption_bits": encryption_bits,
            "signature_digest_alg": csr_util.normalize_encryption(params.get("encryption")).digest_alg,
            "dcv": dcv,
            "validation": generate_validation(dcv, names),
            "last_cert_id": last_cert.id if last_cert is not None else None,
        }

    async def _apply(self, params: dict, user_id: Optional[int]) -> ActionResult:
        params = self._clean(dict(params))
        action = params["action"]

        remaining = await check_duplicate(self.store, action, params, self.settings.DUPLICATE_WINDOW_SECONDS)
        if remaining:
            return ActionResult.failure(f"Duplicate request, please retry in {remaining} seconds")

        params.setdefault("channel", "admin")
        submitted = {k: v for k, v in params.items() if k not in ("private_key", "pay", "commit")}

        async with self.session_factory() as db:
            try:
                ctx = await self._base(db, params, user_id)
                product: Product = ctx["product"]
                last_order: Optional[Order] = ctx["last_order"]
                if action == "reissue" and last_order is not None:
                    params.setdefault("period", last_order.period)

                params = self._apply_information(params, product)
                errors = validator.validate_params(params, product)
                if errors:
                    raise Rejected("Invalid parameters", errors)

                fields = await self._cert_fields(db, params, ctx)

                if last_order is None:
                    order = Order(
                        user_id=ctx["user_id"],
                        product_id=product.id,
                        brand=product.brand,
                        period=int(params["period"]),
                        plus=bool(params.get("plus", True)),
                        contact=params.get("contact"),
                        organization=params.get("organization"),
                    )
                    db.add(order)
                    await db.flush()
                else:
                    order = last_order
                    if action == "renew":
                        order.period = int(params["period"])
                    if params.get("contact"):
                        order.contact = params["contact"]
                    if params.get("organization"):
                        order.organization = params["organization"]

                cert = Cert(order_id=order.id, period=order.period, params=submitted, **fields)
                db.add(cert)
                await db.flush()
                order.latest_cert_id = cert.id
                await db.commit()
            except IntegrityError as e:
                await db.rollback()
                logger.info("{} rejected by a unique constraint: {}", action, e.orig)
                return ActionResult.failure(
                    "refer_id already exists", errors={"refer_id": "refer_id already exists"}, public=True
                )
            except Exception:
                await db.rollback()
                raise

            order_id, cert_id = order.id, cert.id

        logger.info("{} order {} created cert {}", action, order_id, cert_id)
        result = ActionResult.success({"order_id": order_id, "cert_id": cert_id})

        if params.get("pay"):
            paid = await self.pay([order_id], user_id, commit=bool(params.get("commit", True)))
            result.data["pay"] = paid.as_payload(debug=True)
        return result

    @_guarded
    async def new(self, params: dict, user_id: Optional[int] = None) -> ActionResult:
        return await self._apply({**params, "action": "new"}, user_id)

    @_guarded
    async def renew(self, params: dict, user_id: Optional[int] = None) -> ActionResult:
        return await self._apply({**params, "action": "renew"}, user_id)

    @_guarded
    async def reissue(self, params: dict, user_id: Optional[int] = None) -> ActionResult:
        return await self._apply({**params, "action": "reissue"}, user_id)

    # payment

    async def _issue_verify(self, order_ids: List[int]) -> Optional[ActionResult]:
        if self.verify_client is None:
            return None

        errors: dict = {}
        message = ""
        async with self.session_factory() as db:
            res = await db.execute(
                select(Order.id, Product.ca, Cert.alternative_names)
                .join(Cert, Cert.id == Order.latest_cert_id)
                .join(Product, Product.id == Order.product_id)
                .where(Order.id.in_(order_ids), Cert.status == CertStatus.UNPAID)
            )
            rows = res.all()

        for order_id, ca, names in rows:
            if not ca or not names:
                continue
            outcome = await self.verify_client.issue_verify(ca, names)
            if outcome.passed is False:
                errors[order_id] = outcome.errors
                message = outcome.msg
        if errors:
            return ActionResult.failure(message, errors=errors)
        return None

    @_guarded
    async def pay(
        self,
        order_ids: Iterable[int] | int | str,
        user_id: Optional[int] = None,
        commit: bool = True,
        issue_verify: bool = False,
    ) -> ActionResult:
        """
        Charge each unpaid order. A commit task is scheduled after every
        attempt, failed ones included, so a later retry path exists.
        """
        ids = _subject_ids(order_ids)

        if issue_verify:
            refused = await self._issue_verify(ids)
            if refused is not None:
                return refused

        results: List[dict] = []
        failed: dict = {}
        for order_id in ids:
            try:
                async with self.session_factory() as db:
                    outcome = await billing.charge(db, order_id, user_id)
            except Exception:
                logger.exception("charge for order {} failed", order_id)
                outcome = ActionResult.failure("Payment could not be processed")
            results.append({"order_id": order_id, "ok": outcome.ok, "msg": outcome.message})
            if not outcome.ok:
                failed[order_id] = outcome.message
            if commit:
                await self.queue.create_task(order_id, "commit", user_id=user_id)

        if failed:
            message = next(iter(failed.values())) if len(ids) == 1 else "Some orders could not be charged"
            return ActionResult.failure(message, errors=failed, data={"orders": results})
        return ActionResult.success({"orders": results})

    # vendor submission

    def _request(self, order: Order, cert: Cert, product: Product, previous: Optional[Cert]) -> VendorRequest:
        return VendorRequest(
            action=cert.action,
            refer_id=cert.refer_id,
            product_api_id=product.api_id,
            period=cert.period,
            plus=order.plus,
            csr=cert.csr,
            domains=cert.alternative_names,
            validation_method=cert.dcv.method if cert.dcv else "",
            unique_value=cert.unique_value or "",
            encryption_alg=(cert.encryption_alg or "rsa").lower(),
            contact=order.contact,
            organization=order.organization,
            last_api_id=previous.api_id if previous is not None else None,
            last_cert=previous.cert if previous is not None else None,
            dcv=cert.dcv,
        )

    @_guarded
    async def commit(self, order_id: int) -> ActionResult:
        async with self.session_factory() as db:
            order, cert, product = await self._load(db, order_id)
            if cert.status != CertStatus.PENDING:
                raise InvalidState("Order is not waiting for submission")
            request = self._request(order, cert, product, await self._previous(db, cert))

        adapter = self.registry.resolve(product.source)
        submit = {"new": adapter.new, "renew": adapter.renew, "reissue": adapter.reissue}[cert.action]
        result = await submit(request)

        if not result.ok:
            # a retried submit may already have placed the order
            found = await adapter.get_api_id_by_refer_id(cert.refer_id)
            if not (found.ok and (found.data or {}).get("api_id")):
                logger.warning("order {} rejected by {}: {}", order_id, adapter.key, result.msg)
                return ActionResult.from_api(result)
            logger.info("order {} recovered vendor order by refer id", order_id)
            result = ApiResult.success(ApplyResult(api_id=str(found.data["api_id"])))

        applied: ApplyResult = result.data
        async with self.session_factory() as db:
            try:
                cert = await db.get(Cert, cert.id, with_for_update=True)
                if cert is None or cert.status != CertStatus.PENDING:
                    raise InvalidState("Order changed while it was being submitted")
                cert.api_id = applied.api_id
                cert.vendor_id = applied.vendor_id or cert.vendor_id
                cert.cert_apply_status = applied.cert_apply_status
                cert.dcv = merge_dcv(applied.dcv, cert.dcv)
                cert.validation = merge_validation(applied.validation, cert.validation)
                cert.status = CertStatus.PROCESSING
                await db.commit()
            except Exception:
                await db.rollback()
                raise

        logger.info("order {} submitted to {} as {}", order_id, adapter.key, applied.api_id)
        await self.reset_validation_schedule([order_id])
        await self.queue.create_task(order_id, "sync", delay=SYNC_DELAY)
        return ActionResult.success({"order_id": order_id, "api_id": applied.api_id})

    # vendor follow-ups

    async def _in_flight(self, order_id: int, user_id: Optional[int] = None) -> Tuple[Order, Cert, Product]:
        async with self.session_factory() as db:
            order, cert, product = await self._load(db, order_id, user_id)
        if cert.status not in CertStatus.IN_FLIGHT:
            raise InvalidState("Order is not in validation")
        if not cert.api_id:
            raise InvalidState("Order has not been submitted to the CA")
        return order, cert, product

    async def _store_dcv(self, cert_id: int, update: DcvUpdate, local_dcv=None) -> None:
        async with self.session_factory() as db:
            try:
                cert = await db.get(Cert, cert_id, with_for_update=True)
                if cert is None:
                    raise NotFound("Certificate not found")
                local = local_dcv or cert.dcv
                cert.dcv = merge_dcv(update.dcv, local)
                baseline = generate_validation(local, cert.alternative_names) if local_dcv else cert.validation
                cert.validation = merge_validation(update.validation, baseline)
                await db.commit()
            except Exception:
                await db.rollback()
                raise

    @_guarded
    async def revalidate(self, order_id: int, user_id: Optional[int] = None, manual: bool = False) -> ActionResult:
        """
        Ask the CA to re-check domain control. ``manual`` requests restart the
        poller's escalating schedule; queued follow-ups keep it.
        """
        order, cert, product = await self._in_flight(order_id, user_id)
        if manual:
            await self.reset_validation_schedule([order_id])
        adapter = self.registry.resolve(product.source)
        result = await adapter.revalidate(cert.api_id, cert)
        if not result.ok:
            return ActionResult.from_api(result)

        if isinstance(result.data, DcvUpdate):
            await self._store_dcv(cert.id, result.data)
        await self.queue.create_task(order_id, "sync", delay=SYNC_DELAY, user_id=user_id)
        return ActionResult.success({"order_id": order_id})

    @_guarded
    async def update_dcv(self, order_id: int, method: str, user_id: Optional[int] = None) -> ActionResult:
        method = (method or "").lower()
        order, cert, product = await self._in_flight(order_id, user_id)

        if method not in product.validation_methods:
            raise Rejected(
                "Invalid validation method",
                {"validation_method": "validation_method must be one of " + ",".join(product.validation_methods)},
            )
        incompatible = validator.validate_method_compatibility(cert.alternative_names, method)
        if incompatible:
            raise Rejected(incompatible, {"validation_method": incompatible})

        adapter = self.registry.resolve(product.source)
        result = await adapter.update_dcv(cert.api_id, method, cert)
        if not result.ok:
            return ActionResult.from_api(result)

        local = generate_dcv(product.ca, method, cert.csr, cert.unique_value or "")
        await self._store_dcv(cert.id, result.data if isinstance(result.data, DcvUpdate) else DcvUpdate(), local)
        await self.reset_validation_schedule([order_id])
        return ActionResult.success({"order_id": order_id, "method": method})

    @_guarded
    async def remove_unverified_domain(self, order_id: int, user_id: Optional[int] = None) -> ActionResult:
        order, cert, product = await self._in_flight(order_id, user_id)
        adapter = self.registry.resolve(product.source)
        result = await adapter.remove_unverified_domain(cert.api_id, cert)
        if not result.ok:
            return ActionResult.from_api(result)
        await self.queue.create_task(order_id, "sync", delay=SYNC_DELAY, user_id=user_id)
        return ActionResult.success({"order_id": order_id})

    # sync

    @staticmethod
    def _next_status(current: str, reported: str) -> str:
        if current in CertStatus.TERMINAL:
            return current
        if reported in PROGRESS:
            if current == CertStatus.CANCELLING:
                return current
            if PROGRESS.get(current, 0) > PROGRESS[reported]:
                return current
        return reported

    def _apply_snapshot(self, cert: Cert, snap: CertSnapshot, gift_root_domain: bool) -> None:
        cert.status = self._next_status(cert.status, snap.status)

        for flag in ("cert_apply_status", "domain_verify_status", "org_verify_status"):
            value = getattr(snap, flag)
            if value is not None:
                setattr(cert, flag, value)
        if snap.vendor_id:
            cert.vendor_id = snap.vendor_id
        if snap.vendor_cert_id:
            cert.vendor_cert_id = snap.vendor_cert_id

        if snap.alternative_names and snap.alternative_names != cert.alternative_names:
            names = domain_util.convert_to_unicode_domains(snap.alternative_names)
            sans = domain_util.get_sans_from_domains(names, gift_root_domain)
            cert.alternative_names = names
            cert.standard_count = sans["standard_count"]
            cert.wildcard_count = sans["wildcard_count"]

        if snap.dcv is not None:
            cert.dcv = merge_dcv(snap.dcv, cert.dcv)
        if snap.validation:
            cert.validation = merge_validation(snap.validation, cert.validation)

        if snap.cert:
            cert.cert = snap.cert
            cert.intermediate_cert = snap.intermediate_cert or cert.intermediate_cert
            try:
                parsed = csr_util.parse_certificate(snap.cert)
            except csr_util.CsrError:
                logger.warning("cert {}: vendor returned an unparsable certificate", cert.id)
                parsed = {}
            for key, value in parsed.items():
                setattr(cert, key, value)
        if snap.issued_at and not cert.issued_at:
            cert.issued_at = snap.issued_at
        if snap.expires_at and not cert.expires_at:
            cert.expires_at = snap.expires_at

    @_guarded
    async def sync(self, order_id: int, user_id: Optional[int] = None) -> ActionResult:
        async with self.session_factory() as db:
            order, cert, product = await self._load(db, order_id, user_id)
        if not cert.api_id:
            raise InvalidState("Order has not been submitted to the CA")

        adapter = self.registry.resolve(product.source)
        result = await adapter.get(cert.api_id, cert)
        if not result.ok:
            return ActionResult.from_api(result)
        snap: CertSnapshot = result.data

        async with self.session_factory() as db:
            try:
                order = await db.get(Order, order_id, with_for_update=True)
                cert = await db.get(Cert, cert.id, with_for_update=True)
                if order is None or cert is None:
                    raise NotFound("Certificate not found")
                before = cert.status
                self._apply_snapshot(cert, snap, product.gift_root_domain)
                refund = None
                cancelled_remotely = before != CertStatus.CANCELLED and cert.status == CertStatus.CANCELLED

                if cancelled_remotely:
                    # cancelled on the CA side, possibly ahead of our own cancel task
                    refund = await billing.refund_order(db, order, cert)
                    await db.execute(delete(DomainValidationRecord).where(DomainValidationRecord.order_id == order_id))

                if before != CertStatus.ACTIVE and cert.status == CertStatus.ACTIVE:
                    previous = await self._previous(db, cert)
                    if previous is not None and previous.status == CertStatus.ACTIVE:
                        previous.status = CertStatus.RENEWED if cert.action == "renew" else CertStatus.REISSUED
                    await db.execute(delete(DomainValidationRecord).where(DomainValidationRecord.order_id == order_id))
                await db.commit()
            except Exception:
                await db.rollback()
                raise

        if before != cert.status:
            logger.info("order {} cert {} {} -> {}", order_id, cert.id, before, cert.status)
        if cancelled_remotely:
            await self.queue.delete_task(order_id, "cancel")
            logger.info("order {} cancelled by the CA, refunded {} cents", order_id, refund.amount_cents if refund else 0)
        return ActionResult.success({"order_id": order_id, "status": cert.status})

    # cancellation

    @_guarded
    async def commit_cancel(self, order_id: int, user_id: Optional[int] = None) -> ActionResult:
        async with self.session_factory() as db:
            order, cert, product = await self._load(db, order_id, user_id)

            if cert.status == CertStatus.UNPAID:
                result = await billing.delete_unpaid(db, order_id, user_id)
                if result.ok:
                    await self.queue.delete_task(order_id)
                return result

            if cert.status == CertStatus.PENDING:
                return await self._cancel_pending(db, order_id)

            if cert.status not in CANCELLABLE:
                raise InvalidState("This order cannot be cancelled")

            # nothing has been issued yet for in-flight certs; issued ones honour the refund window
            if cert.status == CertStatus.ACTIVE:
                deadline = cert.created_at + timedelta(days=product.refund_period)
                if utcnow() > deadline:
                    raise Rejected("The refund period has expired")

            try:
                cert = await db.get(Cert, cert.id, with_for_update=True)
                cert.status = CertStatus.CANCELLING
                await db.commit()
            except Exception:
                await db.rollback()
                raise

        await self.queue.create_task(order_id, "cancel", delay=CANCEL_DELAY, user_id=user_id)
        logger.info("order {} cancellation requested", order_id)
        return ActionResult.success({"order_id": order_id, "status": CertStatus.CANCELLING})

    @_guarded
    async def revoke_cancel(self, order_id: int, user_id: Optional[int] = None) -> ActionResult:
        await self.queue.delete_task(order_id, "cancel")

        async with self.session_factory() as db:
            try:
                order, cert, product = await self._load(db, order_id, user_id, lock=True)
                if cert.status != CertStatus.CANCELLING:
                    raise InvalidState("Order is not being cancelled")
                cert.status = CertStatus.ACTIVE if cert.cert else CertStatus.PROCESSING
                status = cert.status
                await db.commit()
            except Exception:
                await db.rollback()
                raise

        if cert.api_id:
            await self.queue.create_task(order_id, "sync", delay=SYNC_DELAY, user_id=user_id)
        return ActionResult.success({"order_id": order_id, "status": status})

    @_guarded
    async def cancel(self, order_id: int) -> ActionResult:
        async with self.session_factory() as db:
            order, cert, product = await self._load(db, order_id)
        if cert.status != CertStatus.CANCELLING:
            raise InvalidState("Order is not being cancelled")

        if cert.api_id:
            adapter = self.registry.resolve(product.source)
            result = await adapter.cancel(cert.api_id, cert)
            if not result.ok:
                logger.warning("order {} cancel refused by {}: {}", order_id, adapter.key, result.msg)
                return ActionResult.from_api(result)

        async with self.session_factory() as db:
            try:
                order, cert, product = await self._load(db, order_id, lock=True)
                if cert.status != CertStatus.CANCELLING:
                    raise InvalidState("Order is not being cancelled")
                cert.status = CertStatus.CANCELLED
                refund = await billing.refund_order(db, order, cert)
                await db.execute(delete(DomainValidationRecord).where(DomainValidationRecord.order_id == order_id))
                await db.commit()
            except Exception:
                await db.rollback()
                raise

        logger.info("order {} cancelled, refunded {} cents", order_id, refund.amount_cents if refund else 0)
        return ActionResult.success({"order_id": order_id, "refund_cents": refund.amount_cents if refund else 0})

    async def _cancel_pending(self, db: AsyncSession, order_id: int) -> ActionResult:
        result = await billing.cancel_pending(db, order_id)
        if result.ok:
            await self.queue.delete_task(order_id, "commit")
        return result

    @_guarded
    async def cancel_pending(self, order_id: int) -> ActionResult:
        async with self.session_factory() as db:
            return await self._cancel_pending(db, order_id)

    @_guarded
    async def delete(self, order_id: int, user_id: Optional[int] = None) -> ActionResult:
        async with self.session_factory() as db:
            result = await billing.delete_unpaid(db, order_id, user_id)
        if result.ok:
            await self.queue.delete_task(order_id)
        return result

    # scheduling

    async def reset_validation_schedule(self, order_ids: Iterable[int] | int | str) -> None:
        ids = _subject_ids(order_ids)
        async with self.session_factory() as db:
            try:
                await db.execute(delete(DomainValidationRecord).where(DomainValidationRecord.order_id.in_(ids)))
                await db.commit()
            except Exception:
                await db.rollback()
                raise
        await self.queue.delete_task(ids, ["revalidate", "sync"])

    async def dispatch(self, action: str, subject_id: int, user_id: Optional[int] = None) -> ActionResult:
        """Task queue entry point."""
        handlers = {
            "commit": self.commit,
            "sync": self.sync,
            "revalidate": self.revalidate,
            "cancel": self.cancel,
        }
        handler = handlers.get(action)
        if handler is None:
            return ActionResult.failure(f"Unknown task action: {action}")
        return await handler(subject_id)
