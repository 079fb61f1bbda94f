"""
Funds ledger for startup investments.

Records investor transactions and keeps every startup's
``funds_raised_minor`` equal to the sum of its completed transactions.

A transaction row is always written ``pending`` first. Settlement takes a
short lease on the row (``settlement_claim``), then folds it into the
startup total with one conditional ``$inc`` that also pushes the
transaction id onto ``settling_transactions``; the update only matches
while the id is absent, so a retry of an interrupted settlement never
counts it twice. Only after the increment does the row move to
``completed``, and then the id is pulled again, so the startup document
only carries settlements that are still in flight. A row that is no longer
pending can never be claimed, which keeps it from being counted again once
its id is gone. If the increment fails the row stays ``pending`` with
``needs_retry`` set and ``reconcile_startup`` finishes the job.

Writes for a single startup are also serialized inside the process by
``startup_lock``.
"""
import logging
import threading
import time
import uuid
import weakref
from contextlib import contextmanager
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Dict, List, Optional

from fastapi import HTTPException, status
from pymongo import ReturnDocument
from pymongo.errors import AutoReconnect, PyMongoError

from config import settings
from database import create_document, now, oid, to_public
from schemas import PaymentMethod, Role, Transaction, TransactionStatus

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")
# minor units must fit a signed 64-bit BSON integer, totals included
MAX_AMOUNT = Decimal("1000000000000000")
RETRY_AFTER_SECONDS = "5"

PENDING = TransactionStatus.pending.value
COMPLETED = TransactionStatus.completed.value
FAILED = TransactionStatus.failed.value


# ----------------------
# Errors
# ----------------------

class LedgerValidationError(HTTPException):
    def __init__(self, detail: str):
        super().__init__(status_code=status.HTTP_400_BAD_REQUEST, detail=detail)


class LedgerPermissionError(HTTPException):
    def __init__(self, detail: str):
        super().__init__(status_code=status.HTTP_403_FORBIDDEN, detail=detail)


class LedgerNotFoundError(HTTPException):
    def __init__(self, detail: str):
        super().__init__(status_code=status.HTTP_404_NOT_FOUND, detail=detail)


class TransitionConflictError(HTTPException):
    def __init__(self, detail: str):
        super().__init__(status_code=status.HTTP_409_CONFLICT, detail=detail)


class RetryableLedgerError(HTTPException):
    """Failure the caller may retry; nothing about the request was wrong."""
    def __init__(self, detail: str):
        super().__init__(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=detail,
            headers={"Retry-After": RETRY_AFTER_SECONDS},
        )


class LedgerBusyError(RetryableLedgerError):
    pass


class StorageUnavailableError(RetryableLedgerError):
    pass


class FundsAggregationError(RetryableLedgerError):
    """The transaction row exists but the startup total was not updated."""


# ----------------------
# Money
# ----------------------

def to_minor(amount: Any) -> int:
    """Convert a positive decimal amount to integer minor units (cents)."""
    try:
        value = Decimal(str(amount))
    except (InvalidOperation, ValueError):
        raise LedgerValidationError("Amount must be a number")
    if not value.is_finite() or value <= 0:
        raise LedgerValidationError("Amount must be greater than 0")
    if value > MAX_AMOUNT:
        raise LedgerValidationError(f"Amount must not exceed {MAX_AMOUNT}")
    try:
        minor = int((value / CENT).quantize(Decimal("1"), rounding=ROUND_HALF_UP))
    except InvalidOperation:
        raise LedgerValidationError("Amount has too many digits")
    if minor <= 0:
        raise LedgerValidationError("Amount must be at least 0.01")
    return minor


def from_minor(minor: Optional[int]) -> float:
    return float(Decimal(minor or 0) * CENT)


# ----------------------
# Concurrency & storage guards
# ----------------------

_locks_guard = threading.Lock()
# entries disappear once no request holds or waits on them
_startup_locks: "weakref.WeakValueDictionary[str, threading.Lock]" = weakref.WeakValueDictionary()


@contextmanager
def startup_lock(startup_id: str, timeout: Optional[float] = None):
    """Serialize ledger writes for one startup, waiting at most `timeout` seconds."""
    with _locks_guard:
        lock = _startup_locks.get(startup_id)
        if lock is None:
            lock = threading.Lock()
            _startup_locks[startup_id] = lock
    wait = settings.LEDGER_LOCK_TIMEOUT_SECONDS if timeout is None else timeout
    if not lock.acquire(timeout=wait):
        logger.warning("Ledger lock for startup %s not acquired within %.1fs", startup_id, wait)
        raise LedgerBusyError("Another payment for this startup is being processed, retry shortly")
    try:
        yield
    finally:
        lock.release()


@contextmanager
def storage_errors(action: str):
    # AutoReconnect covers network timeouts and server selection failures
    try:
        yield
    except AutoReconnect as e:
        logger.warning("Database unavailable while %s: %s", action, e)
        raise StorageUnavailableError(f"Database unavailable while {action}, retry shortly")


# ----------------------
# Lookups & presentation
# ----------------------

def get_startup_or_404(db, startup_id: str) -> Dict[str, Any]:
    startup = db["startup"].find_one({"_id": oid(startup_id)})
    if not startup:
        raise LedgerNotFoundError("Startup not found")
    return startup


def get_transaction_or_404(db, tx_id: str) -> Dict[str, Any]:
    tx = db["transaction"].find_one({"_id": oid(tx_id)})
    if not tx:
        raise LedgerNotFoundError("Transaction not found")
    return tx


def present_transaction(doc: Dict[str, Any]) -> Dict[str, Any]:
    d = to_public(doc)
    d["amount"] = from_minor(d.pop("amount_minor", 0))
    return d


def present_startup(doc: Dict[str, Any]) -> Dict[str, Any]:
    d = to_public(doc)
    d["funding_goal"] = from_minor(d.pop("funding_goal_minor", 0))
    d["funds_raised"] = from_minor(d.pop("funds_raised_minor", 0))
    return d


# ----------------------
# Funds aggregator
# ----------------------

def apply_funds(db, startup_id: str, tx_id: str, amount_minor: int) -> bool:
    """
    Fold one transaction into the startup's running total.

    The id is kept in ``settling_transactions`` until its row is marked
    completed. Returns True when the total was incremented and False when
    this transaction had already been applied.
    """
    result = db["startup"].update_one(
        {"_id": oid(startup_id), "settling_transactions": {"$ne": tx_id}},
        {
            "$inc": {"funds_raised_minor": amount_minor},
            "$push": {"settling_transactions": tx_id},
            "$set": {"updated_at": now()},
        },
    )
    if result.modified_count:
        return True
    if db["startup"].find_one({"_id": oid(startup_id)}, {"_id": 1}) is None:
        raise LedgerNotFoundError("Startup not found")
    return False


def release_settled(db, startup_id: str, tx_id: str) -> None:
    """Forget a settled transaction id once its row is no longer pending."""
    db["startup"].update_one(
        {"_id": oid(startup_id)},
        {"$pull": {"settling_transactions": tx_id}},
    )


def _claim_free() -> List[Dict[str, Any]]:
    return [{"settlement_claim": None}, {"claim_expires": {"$lt": time.time()}}]


def _claim(db, tx: Dict[str, Any]) -> Optional[str]:
    """Take the settlement lease on a pending row. Returns the claim token."""
    token = uuid.uuid4().hex
    claimed = db["transaction"].find_one_and_update(
        {"_id": tx["_id"], "status": PENDING, "$or": _claim_free()},
        {"$set": {
            "settlement_claim": token,
            "claim_expires": time.time() + settings.SETTLEMENT_LEASE_SECONDS,
        }},
        return_document=ReturnDocument.AFTER,
    )
    return token if claimed else None


def _current_or_busy(db, tx: Dict[str, Any]) -> Dict[str, Any]:
    current = db["transaction"].find_one({"_id": tx["_id"]})
    if current["status"] == PENDING:
        raise LedgerBusyError("This payment is being settled by another request, retry shortly")
    return current


def _flag_retry(db, tx: Dict[str, Any], token: str) -> None:
    try:
        db["transaction"].update_one(
            {"_id": tx["_id"], "settlement_claim": token},
            {"$set": {
                "needs_retry": True,
                "settlement_claim": None,
                "claim_expires": None,
                "updated_at": now(),
            }},
        )
    except PyMongoError:
        # the lease expires on its own and reconcile_startup picks the row up
        logger.exception("Could not flag transaction %s for retry", tx["_id"])


def _settle(db, tx: Dict[str, Any]) -> Dict[str, Any]:
    tx_id = str(tx["_id"])
    token = _claim(db, tx)
    if token is None:
        return _current_or_busy(db, tx)
    try:
        applied = apply_funds(db, tx["startup_id"], tx_id, tx["amount_minor"])
        if not applied:
            logger.info("Transaction %s was already counted for startup %s", tx_id, tx["startup_id"])
        stamp = now()
        settled = db["transaction"].find_one_and_update(
            {"_id": tx["_id"], "settlement_claim": token},
            {"$set": {
                "status": COMPLETED,
                "needs_retry": False,
                "settlement_claim": None,
                "claim_expires": None,
                "completed_at": stamp,
                "updated_at": stamp,
            }},
            return_document=ReturnDocument.AFTER,
        )
    except PyMongoError:
        logger.exception("Funds update failed for transaction %s on startup %s", tx_id, tx["startup_id"])
        _flag_retry(db, tx, token)
        raise FundsAggregationError(
            "Payment was recorded but the funds total could not be updated; "
            "it stays pending until retried"
        )
    if settled is None:
        # lease ran out and another request finished the row
        return db["transaction"].find_one({"_id": tx["_id"]})
    try:
        release_settled(db, tx["startup_id"], tx_id)
    except PyMongoError:
        logger.warning("Transaction %s completed but is still marked settling on startup %s", tx_id, tx["startup_id"])
    logger.info(
        "Transaction %s completed, %s added to startup %s",
        tx_id, from_minor(tx["amount_minor"]), tx["startup_id"],
    )
    return settled


def _reject(db, tx: Dict[str, Any]) -> Dict[str, Any]:
    tx_id = str(tx["_id"])
    counted = db["startup"].find_one(
        {"_id": oid(tx["startup_id"]), "settling_transactions": tx_id}, {"_id": 1}
    )
    if counted:
        raise TransitionConflictError("Funds for this transaction were already applied; approve it instead")
    rejected = db["transaction"].find_one_and_update(
        {"_id": tx["_id"], "status": PENDING, "$or": _claim_free()},
        {"$set": {"status": FAILED, "needs_retry": False, "updated_at": now()}},
        return_document=ReturnDocument.AFTER,
    )
    if rejected is None:
        return _current_or_busy(db, tx)
    logger.info("Transaction %s rejected by startup %s", tx_id, tx["startup_id"])
    return rejected


# ----------------------
# Transaction recorder
# ----------------------

def record_transaction(
    db,
    investor: Dict[str, Any],
    startup_id: str,
    amount: Any,
    method: str,
    reference: Optional[str] = None,
) -> Dict[str, Any]:
    """
    Persist an investor's payment and, for wallet transfers, count it
    towards the startup's funds straight away. Bank transfers stay pending
    until the startup owner verifies them.
    """
    if investor.get("role") != Role.investor.value:
        raise LedgerPermissionError("Only investors can create transactions")
    amount_minor = to_minor(amount)
    try:
        method = PaymentMethod(method)
    except ValueError:
        raise LedgerValidationError("Method must be wallet-transfer or bank-transfer")
    reference = (reference or "").strip() or None
    if method is PaymentMethod.bank_transfer and not reference:
        raise LedgerValidationError("A bank transfer reference is required")

    with storage_errors("recording a transaction"):
        startup_id = str(get_startup_or_404(db, startup_id)["_id"])
        row = Transaction(
            investor_id=str(investor["_id"]),
            startup_id=startup_id,
            amount_minor=amount_minor,
            method=method,
            status=TransactionStatus.pending,
            reference=reference,
        ).model_dump()
        with startup_lock(startup_id):
            tx_id = create_document(db, "transaction", row)
            logger.info(
                "Recorded %s transaction %s of %s from investor %s to startup %s",
                method.value, tx_id, from_minor(amount_minor), row["investor_id"], startup_id,
            )
            tx = db["transaction"].find_one({"_id": oid(tx_id)})
            if method is PaymentMethod.wallet_transfer:
                tx = _settle(db, tx)
    return tx


# ----------------------
# Verification path
# ----------------------

def verify_transaction(db, user: Dict[str, Any], tx_id: str, decision: str) -> Dict[str, Any]:
    """
    Approve (``completed``) or reject (``failed``) a pending transaction.

    Only the owner of the referenced startup may decide. Repeating the
    decision a transaction already carries returns it unchanged, so a
    duplicate approval never counts the funds twice.
    """
    try:
        decision = TransactionStatus(decision)
    except ValueError:
        raise LedgerValidationError("Status must be completed or failed")
    if decision is TransactionStatus.pending:
        raise LedgerValidationError("Status must be completed or failed")
    if user.get("role") != Role.startup.value:
        raise LedgerPermissionError("Only startups can verify payments")

    with storage_errors("verifying a transaction"):
        tx = get_transaction_or_404(db, tx_id)
        startup = get_startup_or_404(db, tx["startup_id"])
        if startup.get("owner_user_id") != str(user["_id"]):
            raise LedgerPermissionError("Only the owner of this startup can verify its payments")

        with startup_lock(tx["startup_id"]):
            tx = db["transaction"].find_one({"_id": tx["_id"]})
            current = tx["status"]
            if current == decision.value:
                logger.info("Transaction %s is already %s, nothing to do", tx_id, current)
                return tx
            if current != PENDING:
                raise TransitionConflictError(f"Transaction is already {current}")
            if decision is TransactionStatus.completed:
                return _settle(db, tx)
            return _reject(db, tx)


# ----------------------
# Reporting & repair
# ----------------------

def funds_summary(db, startup_id: str) -> Dict[str, Any]:
    startup = get_startup_or_404(db, startup_id)
    startup_id = str(startup["_id"])
    totals = {s.value: {"total": 0, "count": 0} for s in TransactionStatus}
    pipeline = [
        {"$match": {"startup_id": startup_id}},
        {"$group": {"_id": "$status", "total": {"$sum": "$amount_minor"}, "count": {"$sum": 1}}},
    ]
    for row in db["transaction"].aggregate(pipeline):
        totals[row["_id"]] = {"total": int(row["total"]), "count": int(row["count"])}

    goal = int(startup.get("funding_goal_minor", 0) or 0)
    raised = int(startup.get("funds_raised_minor", 0) or 0)
    return {
        "startup_id": startup_id,
        "funding_goal": from_minor(goal),
        "funds_raised": from_minor(raised),
        "progress_percentage": round(raised * 100 / goal, 2) if goal else 0.0,
        "completed_total": from_minor(totals[COMPLETED]["total"]),
        "completed_count": totals[COMPLETED]["count"],
        "pending_total": from_minor(totals[PENDING]["total"]),
        "pending_count": totals[PENDING]["count"],
        "failed_count": totals[FAILED]["count"],
        "consistent": raised == totals[COMPLETED]["total"],
    }


def reconcile_startup(db, startup_id: str) -> Dict[str, Any]:
    """
    Finish settlements that were interrupted: pending rows flagged for
    retry, pending wallet transfers, and pending rows whose funds were
    already counted. Ids left in ``settling_transactions`` by rows that
    already completed are cleared. Returns the funds summary plus the
    repaired ids.
    """
    repaired: List[str] = []
    with storage_errors("reconciling funds"):
        startup_id = str(get_startup_or_404(db, startup_id)["_id"])
        with startup_lock(startup_id):
            settling = set(get_startup_or_404(db, startup_id).get("settling_transactions", []))
            pending = set()
            for tx in db["transaction"].find({"startup_id": startup_id, "status": PENDING}):
                tx_id = str(tx["_id"])
                pending.add(tx_id)
                if (
                    tx_id in settling
                    or tx.get("needs_retry")
                    or tx.get("method") == PaymentMethod.wallet_transfer.value
                ):
                    _settle(db, tx)
                    repaired.append(tx_id)
            for tx_id in settling - pending:
                release_settled(db, startup_id, tx_id)
                logger.info("Cleared settled transaction %s from startup %s", tx_id, startup_id)
        summary = funds_summary(db, startup_id)

    if repaired:
        logger.info("Reconciled %d transaction(s) for startup %s", len(repaired), startup_id)
    if not summary["consistent"]:
        logger.error(
            "Startup %s funds_raised %s does not match completed total %s",
            startup_id, summary["funds_raised"], summary["completed_total"],
        )
    summary["repaired"] = repaired
    return summary


def investor_contributions(db, investor_id: str) -> Dict[str, int]:
    """Completed contribution per startup id, in minor units."""
    pipeline = [
        {"$match": {"investor_id": investor_id, "status": COMPLETED}},
        {"$group": {"_id": "$startup_id", "total": {"$sum": "$amount_minor"}}},
    ]
    return {row["_id"]: int(row["total"]) for row in db["transaction"].aggregate(pipeline)}
