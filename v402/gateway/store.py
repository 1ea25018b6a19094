# v402/gateway/store.py
"""
Durable store for the self-hosted backend.

Rows are converted to pydantic models at this boundary; nothing above the
store sees ORM objects. Every state transition is a single guarded UPDATE
(compare-and-set) so concurrent retries cannot both win.
"""
import json
import logging
from contextlib import contextmanager
from datetime import datetime, timezone
from decimal import Decimal
from typing import Iterator, List, Optional, Tuple

from sqlalchemy import create_engine, event, select, update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from v402.api.models.intent import IntentRecord
from v402.api.models.receipt import Receipt, StoredReceipt
from v402.api.models.tool import Merchant, SpendingPolicy, Tool
from v402.core.config import settings
from v402.core.exceptions import IntentConflictError
from v402.db.models import (
    Base,
    DailySpendModel,
    MerchantModel,
    PaymentIntentModel,
    PolicyModel,
    ReceiptModel,
    ToolModel,
)
from v402.protocol.amount import from_atomic_units, to_atomic_units
from v402.protocol.canonical import normalize_path
from v402.protocol.tool_metadata import match_path_pattern

logger = logging.getLogger(__name__)

# Daily spend is kept at nano precision regardless of currency
SPEND_DECIMALS = 9


def today_utc() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%d")


def _naive_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def create_store_engine(database_url: str) -> Engine:
    """
    Build an engine for the store.

    SQLite gets WAL mode and a busy timeout; in-memory SQLite shares one
    connection across threads.
    """
    if database_url.startswith("sqlite"):
        if database_url in ("sqlite://", "sqlite:///:memory:"):
            return create_engine(
                database_url,
                connect_args={"check_same_thread": False},
                poolclass=StaticPool,
            )
        engine = create_engine(database_url, connect_args={"check_same_thread": False})

        @event.listens_for(engine, "connect")
        def _set_sqlite_pragmas(dbapi_connection, connection_record):
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA journal_mode=WAL")
            cursor.execute("PRAGMA busy_timeout=30000")
            cursor.execute("PRAGMA synchronous=NORMAL")
            cursor.close()

        return engine

    return create_engine(database_url, pool_pre_ping=True)


class IntentStore:
    """
    Intents, receipts, tools, merchants, policies and daily spend.

    Usage:
        store = IntentStore("sqlite:///./v402.db")
        store.init_db()
    """

    def __init__(self, database_url: Optional[str] = None, engine: Optional[Engine] = None):
        self.engine = engine or create_store_engine(database_url or settings.V402_DATABASE_URL)
        self._sessionmaker = sessionmaker(bind=self.engine, expire_on_commit=False)

    def init_db(self) -> None:
        """Create all tables if they do not exist."""
        Base.metadata.create_all(self.engine)

    @contextmanager
    def session(self) -> Iterator[Session]:
        session = self._sessionmaker()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    # --- Merchants and tools ---

    def upsert_merchant(self, merchant: Merchant) -> None:
        with self.session() as s:
            s.merge(MerchantModel(
                merchant_id=merchant.merchantId,
                wallet=merchant.wallet,
                signing_public_key=merchant.signingPublicKey,
                signing_private_key_encrypted=merchant.signingPrivateKeyEncrypted,
            ))

    def get_merchant(self, merchant_id: Optional[str]) -> Optional[Merchant]:
        if not merchant_id:
            return None
        with self.session() as s:
            row = s.get(MerchantModel, merchant_id)
            if row is None:
                return None
            return Merchant(
                merchantId=row.merchant_id,
                wallet=row.wallet,
                signingPublicKey=row.signing_public_key,
                signingPrivateKeyEncrypted=row.signing_private_key_encrypted,
            )

    def upsert_tool(self, tool: Tool) -> None:
        with self.session() as s:
            s.merge(ToolModel(
                tool_id=tool.toolId,
                merchant_id=tool.merchantId,
                name=tool.name,
                description=tool.description,
                base_url=tool.baseUrl.rstrip("/"),
                path_pattern=tool.pathPattern,
                pricing_model=json.dumps(tool.pricingModel),
                accepted_currency=tool.acceptedCurrency,
                merchant_wallet=tool.merchantWallet,
                metadata_signature=tool.metadataSignature,
                status=tool.status,
                created_at=tool.createdAt,
                updated_at=tool.updatedAt,
            ))

    @staticmethod
    def _tool_from_row(row: ToolModel) -> Tool:
        return Tool(
            toolId=row.tool_id,
            merchantId=row.merchant_id,
            name=row.name,
            description=row.description or "",
            baseUrl=row.base_url,
            pathPattern=row.path_pattern,
            pricingModel=json.loads(row.pricing_model or "{}"),
            acceptedCurrency=row.accepted_currency,
            merchantWallet=row.merchant_wallet,
            createdAt=row.created_at,
            updatedAt=row.updated_at,
            metadataSignature=row.metadata_signature,
            status=row.status,
        )

    def get_tool(self, tool_id: str) -> Optional[Tool]:
        with self.session() as s:
            row = s.get(ToolModel, tool_id)
            return self._tool_from_row(row) if row is not None else None

    def list_tools(self, active_only: bool = True) -> List[Tool]:
        with self.session() as s:
            stmt = select(ToolModel)
            if active_only:
                stmt = stmt.where(ToolModel.status == "active")
            return [self._tool_from_row(row) for row in s.scalars(stmt)]

    def find_tool_by_path(self, path: str, base_url: Optional[str] = None) -> Optional[Tool]:
        """
        First active tool whose path pattern matches, most specific pattern first.

        Args:
            path: Route path to match
            base_url: When given, only tools published under this origin are considered
        """
        normalized = normalize_path(path)
        with self.session() as s:
            stmt = select(ToolModel).where(ToolModel.status == "active")
            if base_url:
                stmt = stmt.where(ToolModel.base_url == base_url.rstrip("/"))
            rows = sorted(s.scalars(stmt), key=lambda r: (-len(r.path_pattern), r.tool_id))
            for row in rows:
                if match_path_pattern(row.path_pattern, normalized):
                    return self._tool_from_row(row)
        return None

    # --- Intents ---

    @staticmethod
    def _intent_from_row(row: PaymentIntentModel) -> IntentRecord:
        return IntentRecord(
            intentId=row.intent_id,
            toolId=row.tool_id,
            amount=row.amount,
            currency=row.currency,
            chain=row.chain,
            recipient=row.recipient,
            reference=row.reference,
            expiresAt=row.expires_at,
            requestHash=row.request_hash,
            payer=row.payer,
            mint=row.mint,
            network=row.network,
            toolParamsHash=row.tool_params_hash,
            sessionId=row.session_id,
            maxCalls=row.max_calls,
            callsUsed=row.calls_used,
            spendingAccount=row.spending_account,
            status=row.status,
            txSig=row.tx_sig,
            claimedRequestHash=row.claimed_request_hash,
            createdAt=row.created_at,
            updatedAt=row.updated_at,
        )

    def create_intent(self, record: IntentRecord) -> IntentRecord:
        with self.session() as s:
            row = PaymentIntentModel(
                intent_id=record.intentId,
                reference=record.reference,
                tool_id=record.toolId,
                amount=record.amount,
                currency=record.currency,
                chain=record.chain,
                recipient=record.recipient,
                expires_at=_naive_utc(record.expiresAt),
                request_hash=record.requestHash,
                payer=record.payer,
                mint=record.mint,
                network=record.network,
                status=record.status,
                tool_params_hash=record.toolParamsHash,
                session_id=record.sessionId,
                max_calls=record.maxCalls,
                calls_used=record.callsUsed,
                spending_account=record.spendingAccount,
            )
            s.add(row)
            s.flush()
            return self._intent_from_row(row)

    def get_intent(self, intent_id: str) -> Optional[IntentRecord]:
        with self.session() as s:
            row = s.get(PaymentIntentModel, intent_id)
            return self._intent_from_row(row) if row is not None else None

    def mark_paid_verified(self, intent_id: str, payer: str, tx_sig: str) -> bool:
        """created|paid_verified -> paid_verified, recording payer and proof."""
        with self.session() as s:
            result = s.execute(
                update(PaymentIntentModel)
                .where(
                    PaymentIntentModel.intent_id == intent_id,
                    PaymentIntentModel.status.in_(("created", "paid_verified")),
                )
                .values(status="paid_verified", payer=payer, tx_sig=tx_sig)
                .execution_options(synchronize_session=False)
            )
            return result.rowcount == 1

    def claim_forward(
        self,
        intent_id: str,
        request_hash: str,
        session_intent: bool,
        spend: Optional[Tuple[str, str]] = None,
    ) -> bool:
        """
        Atomically take the forward slot for a request.

        Non-session intents set claimed_request_hash once; session intents
        increment calls_used while it is below max_calls. When `spend`
        (payer, amount) is given, the daily spend is incremented in the same
        transaction as a successful claim; for sessions only the claim that
        takes calls_used from 0 to 1 adds it.

        Returns:
            True if this caller won the claim
        """
        with self.session() as s:
            stmt = update(PaymentIntentModel).where(
                PaymentIntentModel.intent_id == intent_id,
                PaymentIntentModel.status == "paid_verified",
            )
            if session_intent:
                stmt = stmt.where(
                    PaymentIntentModel.calls_used < PaymentIntentModel.max_calls
                ).values(calls_used=PaymentIntentModel.calls_used + 1)
            else:
                stmt = stmt.where(
                    PaymentIntentModel.claimed_request_hash.is_(None)
                ).values(claimed_request_hash=request_hash)

            result = s.execute(stmt.execution_options(synchronize_session=False))
            claimed = result.rowcount == 1
            if claimed and spend is not None and (not session_intent or self._first_session_call(s, intent_id)):
                self._add_daily_spend(s, spend[0], spend[1], today_utc())
            return claimed

    @staticmethod
    def _first_session_call(s: Session, intent_id: str) -> bool:
        # Read inside the claiming transaction, so only the 0 -> 1 claim sees 1
        calls_used = s.execute(
            select(PaymentIntentModel.calls_used).where(PaymentIntentModel.intent_id == intent_id)
        ).scalar_one()
        return calls_used == 1

    def mark_consumed(self, intent_id: str, session_intent: bool = False) -> bool:
        """
        paid_verified -> consumed.

        Session intents only move once calls_used has reached max_calls.
        """
        with self.session() as s:
            stmt = update(PaymentIntentModel).where(
                PaymentIntentModel.intent_id == intent_id,
                PaymentIntentModel.status == "paid_verified",
            )
            if session_intent:
                stmt = stmt.where(PaymentIntentModel.calls_used >= PaymentIntentModel.max_calls)
            result = s.execute(
                stmt.values(status="consumed").execution_options(synchronize_session=False)
            )
            return result.rowcount == 1

    # --- Receipts ---

    def save_receipt(self, stored: StoredReceipt) -> None:
        """
        Insert a receipt with its captured response.

        Raises:
            IntentConflictError: A receipt for (intent_id, request_hash) already exists
        """
        r = stored.receipt
        try:
            with self.session() as s:
                s.add(ReceiptModel(
                    receipt_id=r.receiptId,
                    intent_id=r.intentId,
                    tool_id=r.toolId,
                    request_hash=r.requestHash,
                    response_hash=r.responseHash,
                    tx_sig=r.txSig,
                    payer=r.payer,
                    merchant=r.merchant,
                    timestamp=r.timestamp,
                    signature=r.signature,
                    signer_pubkey=r.signerPubkey,
                    version=r.version,
                    amount=r.amount,
                    currency=r.currency,
                    block_height=r.block_height,
                    receipt_hash=r.receipt_hash,
                    response_status=stored.responseStatus,
                    response_headers=json.dumps(stored.responseHeaders),
                    response_body=stored.responseBody,
                ))
                s.flush()
        except IntegrityError as e:
            logger.warning(f"Receipt already stored for intent {r.intentId} / {r.requestHash}")
            raise IntentConflictError(
                "Receipt already issued for this request",
                details={"intent_id": r.intentId, "request_hash": r.requestHash},
            ) from e

    @staticmethod
    def _receipt_from_row(row: ReceiptModel) -> StoredReceipt:
        receipt = Receipt(
            receiptId=row.receipt_id,
            intentId=row.intent_id,
            toolId=row.tool_id,
            requestHash=row.request_hash,
            responseHash=row.response_hash,
            txSig=row.tx_sig,
            payer=row.payer,
            merchant=row.merchant,
            timestamp=row.timestamp,
            signature=row.signature,
            signerPubkey=row.signer_pubkey,
            version=row.version,
            amount=row.amount,
            currency=row.currency,
            block_height=row.block_height,
            receipt_hash=row.receipt_hash,
        )
        return StoredReceipt(
            receipt=receipt,
            responseStatus=row.response_status,
            responseHeaders=json.loads(row.response_headers or "{}"),
            responseBody=row.response_body or b"",
        )

    def get_receipt(self, intent_id: str, request_hash: str) -> Optional[StoredReceipt]:
        with self.session() as s:
            row = s.scalars(
                select(ReceiptModel).where(
                    ReceiptModel.intent_id == intent_id,
                    ReceiptModel.request_hash == request_hash,
                )
            ).first()
            return self._receipt_from_row(row) if row is not None else None

    def list_receipts(self, intent_id: str) -> List[StoredReceipt]:
        with self.session() as s:
            rows = s.scalars(
                select(ReceiptModel)
                .where(ReceiptModel.intent_id == intent_id)
                .order_by(ReceiptModel.created_at)
            )
            return [self._receipt_from_row(row) for row in rows]

    # --- Policies and daily spend ---

    def get_policy(self, payer: str) -> Optional[SpendingPolicy]:
        with self.session() as s:
            row = s.get(PolicyModel, payer)
            if row is None:
                return None
            return SpendingPolicy(
                payer=row.payer,
                maxSpendPerCall=row.max_spend_per_call,
                maxSpendPerDay=row.max_spend_per_day,
                allowlistedToolIds=json.loads(row.allowlisted_tool_ids or "[]"),
                allowlistedMerchants=json.loads(row.allowlisted_merchants or "[]"),
            )

    def set_policy(self, policy: SpendingPolicy) -> None:
        if not policy.payer:
            raise ValueError("Policy must name a payer")
        with self.session() as s:
            s.merge(PolicyModel(
                payer=policy.payer,
                max_spend_per_call=str(policy.maxSpendPerCall) if policy.maxSpendPerCall is not None else None,
                max_spend_per_day=str(policy.maxSpendPerDay) if policy.maxSpendPerDay is not None else None,
                allowlisted_tool_ids=json.dumps(policy.allowlistedToolIds),
                allowlisted_merchants=json.dumps(policy.allowlistedMerchants),
            ))

    def get_daily_spend(self, payer: str, day: Optional[str] = None) -> Decimal:
        with self.session() as s:
            row = s.get(DailySpendModel, (payer, day or today_utc()))
            atomic = row.amount_atomic if row is not None else 0
        return Decimal(from_atomic_units(atomic, SPEND_DECIMALS))

    def increment_daily_spend(self, payer: str, amount: str, day: Optional[str] = None) -> None:
        with self.session() as s:
            self._add_daily_spend(s, payer, amount, day or today_utc())

    def _add_daily_spend(self, s: Session, payer: str, amount: str, day: str) -> None:
        delta = to_atomic_units(amount, SPEND_DECIMALS)
        dialect = self.engine.dialect.name

        if dialect in ("sqlite", "postgresql"):
            if dialect == "sqlite":
                from sqlalchemy.dialects.sqlite import insert as dialect_insert
            else:
                from sqlalchemy.dialects.postgresql import insert as dialect_insert
            stmt = dialect_insert(DailySpendModel).values(payer=payer, date_utc=day, amount_atomic=delta)
            stmt = stmt.on_conflict_do_update(
                index_elements=["payer", "date_utc"],
                set_={"amount_atomic": DailySpendModel.amount_atomic + stmt.excluded.amount_atomic},
            )
            s.execute(stmt)
            return

        result = s.execute(
            update(DailySpendModel)
            .where(DailySpendModel.payer == payer, DailySpendModel.date_utc == day)
            .values(amount_atomic=DailySpendModel.amount_atomic + delta)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            s.add(DailySpendModel(payer=payer, date_utc=day, amount_atomic=delta))
            s.flush()
