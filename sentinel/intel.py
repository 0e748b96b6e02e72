import re
from dataclasses import dataclass, field
from typing import Any


FIELD_NAMES: dict[str, str] = {
    "bank_accounts": "bankAccounts",
    "upi_ids": "upiIds",
    "phishing_links": "phishingLinks",
    "phone_numbers": "phoneNumbers",
    "suspicious_keywords": "suspiciousKeywords",
}

URGENCY_KEYWORDS = [
    "urgent",
    "immediately",
    "today",
    "expire",
    "last chance",
    "hurry",
    "deadline",
    "asap",
    "final warning",
]

PERSONAL_INFO_KEYWORDS = [
    "otp",
    "aadhaar",
    "bank details",
    "account number",
    "card number",
    "cvv",
    "pin",
    "password",
    "upi id",
    "ifsc",
]

THREAT_KEYWORDS = [
    "blocked",
    "suspended",
    "legal action",
    "arrest",
    "deactivated",
    "freeze",
    "locked",
]

SUSPICIOUS_KEYWORDS = sorted(
    {
        "account blocked",
        "account suspended",
        "security alert",
        "customer care",
        "verify now",
        "click link",
        "update kyc",
        "refund",
        "prize",
        "cashback",
        "kyc",
        *URGENCY_KEYWORDS,
        *PERSONAL_INFO_KEYWORDS,
        *THREAT_KEYWORDS,
    }
)

UPI_RE = re.compile(r"[a-zA-Z0-9._-]{2,}@[a-zA-Z]{2,}")
PHONE_RE = re.compile(r"\+?\d[\d -]{8,}\d")
LINK_RE = re.compile(r"https?://\S+")
BANK_RE = re.compile(r"\b\d{9,18}\b")
IFSC_RE = re.compile(r"\b[A-Z]{4}0[A-Z0-9]{6}\b", re.IGNORECASE)
ACCOUNT_CONTEXT_RE = re.compile(r"(account\s*(number|no\.?)|bank\s*account)", re.IGNORECASE)


@dataclass(frozen=True)
class IntelligenceFragment:
    """Scam artifacts extracted from one or more turns.

    Every field is a set of exact strings, so two fragments compare equal
    whenever they hold the same entries regardless of the order they were
    observed in.
    """

    bank_accounts: frozenset[str] = field(default_factory=frozenset)
    upi_ids: frozenset[str] = field(default_factory=frozenset)
    phishing_links: frozenset[str] = field(default_factory=frozenset)
    phone_numbers: frozenset[str] = field(default_factory=frozenset)
    suspicious_keywords: frozenset[str] = field(default_factory=frozenset)

    @classmethod
    def from_payload(cls, raw: Any) -> "IntelligenceFragment":
        if not isinstance(raw, dict):
            return cls()
        values: dict[str, frozenset[str]] = {}
        for attr, key in FIELD_NAMES.items():
            values[attr] = frozenset(_ensure_list(raw.get(key)))
        return cls(**values)

    def to_payload(self) -> dict[str, list[str]]:
        return {key: sorted(getattr(self, attr)) for attr, key in FIELD_NAMES.items()}

    def is_empty(self) -> bool:
        return not any(getattr(self, attr) for attr in FIELD_NAMES)

    def counts(self) -> dict[str, int]:
        return {key: len(getattr(self, attr)) for attr, key in FIELD_NAMES.items()}


def merge(a: IntelligenceFragment, b: IntelligenceFragment) -> IntelligenceFragment:
    return IntelligenceFragment(**{attr: getattr(a, attr) | getattr(b, attr) for attr in FIELD_NAMES})


def extract_fragment(text: str) -> IntelligenceFragment:
    lower = text.lower()

    upis = UPI_RE.findall(text)
    phones = [p for p in PHONE_RE.findall(text) if len(re.sub(r"\D", "", p)) <= 13]
    links = LINK_RE.findall(text)

    bank_accounts: list[str] = []
    if ACCOUNT_CONTEXT_RE.search(text) or IFSC_RE.search(text):
        for cand in BANK_RE.findall(text):
            # Indian mobile numbers look like 10-digit account numbers.
            if len(cand) == 10 and cand.startswith(("6", "7", "8", "9")):
                continue
            bank_accounts.append(cand)

    keywords = [k for k in SUSPICIOUS_KEYWORDS if re.search(rf"\b{re.escape(k)}\b", lower)]

    return IntelligenceFragment(
        bank_accounts=frozenset(bank_accounts),
        upi_ids=frozenset(upis),
        phishing_links=frozenset(links),
        phone_numbers=frozenset(phones),
        suspicious_keywords=frozenset(keywords),
    )


def _ensure_list(value: Any) -> list[str]:
    if isinstance(value, (list, tuple, set, frozenset)):
        return [str(v).strip() for v in value if v is not None and str(v).strip()]
    return []
