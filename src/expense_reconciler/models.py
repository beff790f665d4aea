from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional

SCHEMA_VERSION = 2

# 'demand' is the legacy spelling of an expense reference on transactions.
EXPENSE_ENTITY_TYPES = ("expense", "demand")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _to_decimal(value: Any) -> Decimal:
    if value is None or value == "":
        return Decimal("0")
    return Decimal(str(value))


def _to_date(value: Any) -> Optional[date]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return datetime.fromisoformat(str(value)[:10]).date()


def _to_datetime(value: Any) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day, tzinfo=timezone.utc)
    parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _iso(value: Optional[date]) -> Optional[str]:
    return value.isoformat() if value is not None else None


class MatchStatus(str, Enum):
    """Lifecycle of an AI proposal."""
    PENDING = "pending"
    VALIDATED = "validated"
    REJECTED = "rejected"

    @property
    def is_terminal(self) -> bool:
        return self is not MatchStatus.PENDING


@dataclass
class MatchedEntity:
    entity_type: str
    entity_id: str
    entity_name: str = ""
    confidence: int = 100
    matched_at: Optional[datetime] = None
    matched_by: str = "manual"  # auto|manual
    notes: str = ""

    @property
    def is_expense(self) -> bool:
        return self.entity_type in EXPENSE_ENTITY_TYPES

    @classmethod
    def from_record(cls, data: Dict) -> "MatchedEntity":
        entity_type = data.get("entity_type", "expense")
        if entity_type == "demand":
            entity_type = "expense"
        return cls(
            entity_type=entity_type,
            entity_id=str(data.get("entity_id", "")),
            entity_name=data.get("entity_name") or "",
            confidence=int(data.get("confidence", 100)),
            matched_at=_to_datetime(data.get("matched_at")),
            matched_by=data.get("matched_by", "manual"),
            notes=data.get("notes") or "",
        )

    def to_record(self) -> Dict:
        return {
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "entity_name": self.entity_name,
            "confidence": self.confidence,
            "matched_at": _iso(self.matched_at),
            "matched_by": self.matched_by,
            "notes": self.notes,
        }


@dataclass
class Transaction:
    id: str
    club_id: str
    amount: Decimal
    execution_date: date
    counterparty_name: str = ""
    communication: str = ""
    sequence_number: str = ""
    value_date: Optional[date] = None
    counterparty_iban: Optional[str] = None
    details: str = ""
    matched_entities: List[MatchedEntity] = field(default_factory=list)
    reconciled: bool = False
    is_split_parent: bool = False
    created_at: Optional[datetime] = None

    @property
    def is_outflow(self) -> bool:
        return self.amount < 0

    def expense_ids(self) -> List[str]:
        return [e.entity_id for e in self.matched_entities if e.is_expense]

    def references_expense(self, expense_id: str) -> bool:
        return expense_id in self.expense_ids()

    def drop_expense(self, expense_id: str) -> bool:
        before = len(self.matched_entities)
        self.matched_entities = [
            e for e in self.matched_entities
            if not (e.is_expense and e.entity_id == expense_id)
        ]
        self.reconciled = bool(self.matched_entities)
        return len(self.matched_entities) != before

    @classmethod
    def from_record(cls, data: Dict) -> "Transaction":
        entities = [MatchedEntity.from_record(e) for e in data.get("matched_entities") or []]
        legacy_claim = data.get("expense_claim_id")
        if legacy_claim and legacy_claim not in [e.entity_id for e in entities if e.is_expense]:
            entities.append(MatchedEntity(
                entity_type="expense",
                entity_id=str(legacy_claim),
                matched_by="manual",
                notes="legacy expense_claim_id",
            ))
        return cls(
            id=str(data["id"]),
            club_id=data.get("club_id", ""),
            amount=_to_decimal(data.get("amount")),
            execution_date=_to_date(data.get("execution_date")),
            counterparty_name=data.get("counterparty_name") or "",
            communication=data.get("communication") or "",
            sequence_number=data.get("sequence_number") or "",
            value_date=_to_date(data.get("value_date")),
            counterparty_iban=data.get("counterparty_iban"),
            details=data.get("details") or "",
            matched_entities=entities,
            reconciled=bool(data.get("reconciled", bool(entities))),
            is_split_parent=bool(data.get("is_split_parent", False)),
            created_at=_to_datetime(data.get("created_at")),
        )

    def to_record(self) -> Dict:
        return {
            "schema_version": SCHEMA_VERSION,
            "id": self.id,
            "club_id": self.club_id,
            "amount": str(self.amount),
            "execution_date": _iso(self.execution_date),
            "value_date": _iso(self.value_date),
            "counterparty_name": self.counterparty_name,
            "counterparty_iban": self.counterparty_iban,
            "communication": self.communication,
            "details": self.details,
            "sequence_number": self.sequence_number,
            "matched_entities": [e.to_record() for e in self.matched_entities],
            "reconciled": self.reconciled,
            "is_split_parent": self.is_split_parent,
            "created_at": _iso(self.created_at),
        }


@dataclass
class JustificationDocument:
    url: str
    original_name: str = ""
    display_name: str = ""
    mime_type: str = ""
    size: int = 0
    uploaded_at: Optional[datetime] = None
    uploaded_by: Optional[str] = None
    file_hash: Optional[str] = None

    @classmethod
    def from_record(cls, data: Dict) -> "JustificationDocument":
        return cls(
            url=data.get("url", ""),
            original_name=data.get("original_name") or "",
            display_name=data.get("display_name") or data.get("original_name") or "",
            mime_type=data.get("mime_type") or "",
            size=int(data.get("size") or 0),
            uploaded_at=_to_datetime(data.get("uploaded_at")),
            uploaded_by=data.get("uploaded_by"),
            file_hash=data.get("file_hash") or None,
        )

    @classmethod
    def from_legacy_url(cls, url: str) -> "JustificationDocument":
        name = url.split("?")[0].rstrip("/").rsplit("/", 1)[-1]
        return cls(url=url, original_name=name, display_name=name)

    def to_record(self) -> Dict:
        return {
            "url": self.url,
            "original_name": self.original_name,
            "display_name": self.display_name,
            "mime_type": self.mime_type,
            "size": self.size,
            "uploaded_at": _iso(self.uploaded_at),
            "uploaded_by": self.uploaded_by,
            "file_hash": self.file_hash,
        }


@dataclass
class Expense:
    id: str
    club_id: str
    amount: Decimal
    requested_date: Optional[date]
    requester_first_name: str = ""
    requester_last_name: str = ""
    requester_id: str = ""
    title: str = ""
    description: str = ""
    category: str = ""
    accounting_code: str = ""
    status: str = "submitted"
    transaction_id: Optional[str] = None
    documents: List[JustificationDocument] = field(default_factory=list)
    auto_linked: bool = False
    link_provenance: Optional[str] = None
    linked_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

    @property
    def requester_name(self) -> str:
        return f"{self.requester_first_name} {self.requester_last_name}".strip()

    @property
    def label(self) -> str:
        return self.requester_name or self.title or self.description or self.id

    def document_hashes(self) -> List[str]:
        return [d.file_hash for d in self.documents if d.file_hash]

    @classmethod
    def from_record(cls, data: Dict) -> "Expense":
        docs = [JustificationDocument.from_record(d) for d in data.get("documents") or []]
        # Older records carry bare URLs instead of structured documents.
        legacy_urls = list(data.get("document_urls") or data.get("urls_justificatifs") or [])
        if data.get("document_url"):
            legacy_urls.insert(0, data["document_url"])
        known = {d.url for d in docs}
        for url in legacy_urls:
            if url and url not in known:
                docs.append(JustificationDocument.from_legacy_url(url))
                known.add(url)
        legacy_hash = data.get("document_hash")
        if legacy_hash and legacy_hash not in [d.file_hash for d in docs]:
            unhashed = next((d for d in docs if not d.file_hash), None)
            if unhashed is not None:
                unhashed.file_hash = legacy_hash
            else:
                docs.append(JustificationDocument(url="", file_hash=legacy_hash))
        return cls(
            id=str(data["id"]),
            club_id=data.get("club_id", ""),
            amount=_to_decimal(data.get("amount")),
            requested_date=_to_date(data.get("requested_date")),
            requester_first_name=data.get("requester_first_name") or "",
            requester_last_name=data.get("requester_last_name") or "",
            requester_id=data.get("requester_id") or "",
            title=data.get("title") or "",
            description=data.get("description") or "",
            category=data.get("category") or "",
            accounting_code=data.get("accounting_code") or "",
            status=data.get("status") or "submitted",
            transaction_id=data.get("transaction_id") or None,
            documents=docs,
            auto_linked=bool(data.get("auto_linked", False)),
            link_provenance=data.get("link_provenance"),
            linked_at=_to_datetime(data.get("linked_at")),
            created_at=_to_datetime(data.get("created_at")),
        )

    def to_record(self) -> Dict:
        return {
            "schema_version": SCHEMA_VERSION,
            "id": self.id,
            "club_id": self.club_id,
            "amount": str(self.amount),
            "requested_date": _iso(self.requested_date),
            "requester_first_name": self.requester_first_name,
            "requester_last_name": self.requester_last_name,
            "requester_id": self.requester_id,
            "title": self.title,
            "description": self.description,
            "category": self.category,
            "accounting_code": self.accounting_code,
            "status": self.status,
            "transaction_id": self.transaction_id,
            "documents": [d.to_record() for d in self.documents],
            "auto_linked": self.auto_linked,
            "link_provenance": self.link_provenance,
            "linked_at": _iso(self.linked_at),
            "created_at": _iso(self.created_at),
        }


@dataclass
class MatchCandidate:
    transaction: Transaction
    expense: Expense
    confidence: int
    reasons: List[str] = field(default_factory=list)

    @property
    def transaction_id(self) -> str:
        return self.transaction.id

    @property
    def expense_id(self) -> str:
        return self.expense.id

    @property
    def reason(self) -> str:
        if self.reasons:
            return f"Confidence {self.confidence}%: {', '.join(self.reasons)}"
        return f"Confidence {self.confidence}%"


@dataclass
class BatchMatchResult:
    auto_linked: List[MatchCandidate] = field(default_factory=list)
    suggested: List[MatchCandidate] = field(default_factory=list)
    unmatched_transactions: List[Transaction] = field(default_factory=list)
    unmatched_expenses: List[Expense] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)

    def summary(self) -> Dict[str, int]:
        return {
            "auto_linked": len(self.auto_linked),
            "suggested": len(self.suggested),
            "unmatched_transactions": len(self.unmatched_transactions),
            "unmatched_expenses": len(self.unmatched_expenses),
            "errors": len(self.errors),
        }


@dataclass
class AIMatchAnalysis:
    expense_id: str
    confidence: int
    reasoning: str
    extracted_info: Dict = field(default_factory=dict)


@dataclass
class AIMatch:
    id: str
    club_id: str
    transaction_id: str
    expense_id: str
    confidence: int
    reasoning: str
    status: MatchStatus = MatchStatus.PENDING
    created_at: Optional[datetime] = None
    created_by: str = ""
    validated_by: Optional[str] = None
    validated_at: Optional[datetime] = None

    @classmethod
    def from_record(cls, data: Dict) -> "AIMatch":
        return cls(
            id=str(data["id"]),
            club_id=data.get("club_id", ""),
            transaction_id=str(data["transaction_id"]),
            expense_id=str(data["expense_id"]),
            confidence=int(data.get("confidence", 0)),
            reasoning=data.get("reasoning") or "",
            status=MatchStatus(data.get("status", "pending")),
            created_at=_to_datetime(data.get("created_at")),
            created_by=data.get("created_by") or "",
            validated_by=data.get("validated_by"),
            validated_at=_to_datetime(data.get("validated_at")),
        )

    def to_record(self) -> Dict:
        return {
            "schema_version": SCHEMA_VERSION,
            "id": self.id,
            "club_id": self.club_id,
            "transaction_id": self.transaction_id,
            "expense_id": self.expense_id,
            "confidence": self.confidence,
            "reasoning": self.reasoning,
            "status": self.status.value,
            "created_at": _iso(self.created_at),
            "created_by": self.created_by,
            "validated_by": self.validated_by,
            "validated_at": _iso(self.validated_at),
        }


@dataclass
class UploadedFile:
    filename: str
    content: bytes
    mime_type: str = "application/octet-stream"

    @property
    def size(self) -> int:
        return len(self.content)


@dataclass
class DuplicateCheck:
    filename: str
    hash: str
    is_duplicate: bool = False
    duplicate_in_batch: bool = False
    duplicate_of: Optional[str] = None

    @property
    def flagged(self) -> bool:
        return self.is_duplicate or self.duplicate_in_batch


@dataclass
class SequenceMatch:
    filename: str
    sequence: Optional[str]
    transaction: Optional[Transaction] = None

    @property
    def matched(self) -> bool:
        return self.transaction is not None
