"""
Rule-based transaction classification.

Narrations are matched against ordered keyword tables for category, merchant
platform, and payment method. The classifier works on the whole batch because
recurring detection needs to see every row: any normalized merchant key that
appears two or more times flags all of its rows as recurring.
"""

from __future__ import annotations

import re
from collections import Counter
from dataclasses import dataclass
from functools import lru_cache
from typing import List, Optional, Sequence, Tuple

from models.statement import ClassifiedBy, ClassifiedRow, ConfidenceScores, RawImportRow

AMOUNT_CONFIDENCE = 1.0
DATETIME_CONFIDENCE = 0.95
TYPE_CONFIDENCE = 1.0
PLATFORM_CONFIDENCE = 0.9
PAYMENT_METHOD_CONFIDENCE = 1.0

MERCHANT_KEY_STOPWORDS = frozenset(
    {
        "upi", "neft", "imps", "rtgs", "ach", "nach", "pos", "atm", "ecs",
        "payment", "transfer", "txn", "trf", "from", "paid", "bill", "debit",
        "credit", "card", "bank", "ref", "online", "purchase", "mandate",
    }
)


@dataclass(frozen=True)
class CategoryRule:
    keywords: Tuple[str, ...]
    category: str
    confidence: float


@dataclass(frozen=True)
class LabelRule:
    keywords: Tuple[str, ...]
    label: str


CATEGORY_RULES: Tuple[CategoryRule, ...] = (
    CategoryRule(
        ("zomato", "swiggy", "uber eats", "blinkit", "zepto", "dunzo", "bigbasket", "restaurant", "food", "cafe", "dhaba"),
        "Food",
        0.9,
    ),
    CategoryRule(
        ("netflix", "spotify", "hotstar", "prime video", "youtube premium", "disney", "subscription", "ott"),
        "Entertainment",
        0.92,
    ),
    CategoryRule(
        ("uber", "ola", "rapido", "metro", "bus", "railway", "irctc", "petrol", "diesel", "fuel"),
        "Transport",
        0.9,
    ),
    CategoryRule(
        ("amazon", "flipkart", "myntra", "meesho", "ajio", "nykaa", "shopping", "mall"),
        "Shopping",
        0.88,
    ),
    CategoryRule(
        ("makemytrip", "goibibo", "yatra", "oyo", "hotel", "airbnb", "flight", "airline"),
        "Travel",
        0.88,
    ),
    CategoryRule(
        ("apollo", "hospital", "pharmacy", "medical", "doctor", "clinic", "health", "medplus", "netmeds"),
        "Health",
        0.85,
    ),
    CategoryRule(
        (
            "electricity", "eb bill", "bescom", "msedcl", "tata power", "power", "water bill", "gas bill",
            "bsnl", "airtel", "jio", "wifi", "broadband", "internet",
        ),
        "Utilities",
        0.9,
    ),
    CategoryRule(("rent", "rental", "house rent", "apartment", "flat", "pg"), "Rent", 0.92),
    CategoryRule(("salary", "payroll", "pay credit", "stipend"), "Salary", 0.95),
    CategoryRule(("emi", "loan", "installment", "home loan", "car loan"), "EMI", 0.9),
    CategoryRule(("insurance", "lic", "premium", "policy"), "Insurance", 0.88),
    CategoryRule(
        ("school", "college", "university", "tuition", "course", "udemy", "coursera"),
        "Education",
        0.87,
    ),
)

# Display names for merchants; kept apart from categories so one merchant can
# carry both a category and a platform.
PLATFORM_RULES: Tuple[LabelRule, ...] = (
    LabelRule(("uber eats",), "Uber Eats"),
    LabelRule(("zomato",), "Zomato"),
    LabelRule(("swiggy",), "Swiggy"),
    LabelRule(("blinkit",), "Blinkit"),
    LabelRule(("zepto",), "Zepto"),
    LabelRule(("bigbasket",), "BigBasket"),
    LabelRule(("dunzo",), "Dunzo"),
    LabelRule(("netflix",), "Netflix"),
    LabelRule(("spotify",), "Spotify"),
    LabelRule(("hotstar", "disney"), "Disney+ Hotstar"),
    LabelRule(("prime video",), "Prime Video"),
    LabelRule(("youtube",), "YouTube"),
    LabelRule(("uber",), "Uber"),
    LabelRule(("ola",), "Ola"),
    LabelRule(("rapido",), "Rapido"),
    LabelRule(("irctc",), "IRCTC"),
    LabelRule(("amazon",), "Amazon"),
    LabelRule(("flipkart",), "Flipkart"),
    LabelRule(("myntra",), "Myntra"),
    LabelRule(("meesho",), "Meesho"),
    LabelRule(("ajio",), "Ajio"),
    LabelRule(("nykaa",), "Nykaa"),
    LabelRule(("makemytrip",), "MakeMyTrip"),
    LabelRule(("goibibo",), "Goibibo"),
    LabelRule(("oyo",), "OYO"),
    LabelRule(("airbnb",), "Airbnb"),
    LabelRule(("apollo",), "Apollo"),
    LabelRule(("medplus",), "MedPlus"),
    LabelRule(("netmeds",), "Netmeds"),
    LabelRule(("bescom",), "BESCOM"),
    LabelRule(("tata power",), "Tata Power"),
    LabelRule(("airtel",), "Airtel"),
    LabelRule(("jio",), "Jio"),
    LabelRule(("bsnl",), "BSNL"),
    LabelRule(("lic",), "LIC"),
    LabelRule(("udemy",), "Udemy"),
    LabelRule(("coursera",), "Coursera"),
)

PAYMENT_RULES: Tuple[LabelRule, ...] = (
    LabelRule(("upi", "@"), "UPI"),
    LabelRule(
        ("neft", "rtgs", "imps", "trf", "bank transfer", "fund transfer", "transfer to", "transfer from"),
        "Bank Transfer",
    ),
    LabelRule(("atm", "cash withdrawal"), "Cash"),
    LabelRule(("credit card", "cc payment", "creditcard"), "Credit Card"),
    LabelRule(("debit card",), "Debit Card"),
)


def classify_rows(rows: Sequence[RawImportRow]) -> List[ClassifiedRow]:
    """
    Classify a batch of raw rows.

    Pure and deterministic: identical input yields identical output. Every row
    comes back tagged `ClassifiedBy.RULE`; unmatched fields stay None with no
    confidence entry.
    """

    platforms = [match_platform(row.narration) for row in rows]
    keys = [merchant_key(row.narration, platform) for row, platform in zip(rows, platforms)]
    key_counts = Counter(key for key in keys if key)

    classified: List[ClassifiedRow] = []
    for row, platform, key in zip(rows, platforms, keys):
        category, category_confidence = match_category(row.narration)
        payment_method = match_payment_method(row.narration)

        confidence = ConfidenceScores(
            amount=AMOUNT_CONFIDENCE if row.amount is not None else None,
            datetime=DATETIME_CONFIDENCE if row.datetime is not None else None,
            type=TYPE_CONFIDENCE if row.type is not None else None,
            category=category_confidence if category else None,
            platform=PLATFORM_CONFIDENCE if platform else None,
            payment_method=PAYMENT_METHOD_CONFIDENCE if payment_method else None,
        )

        classified.append(
            ClassifiedRow(
                row=row,
                category=category,
                platform=platform,
                payment_method=payment_method,
                notes=None,
                tags=[],
                recurring_flag=bool(key) and key_counts[key] >= 2,
                confidence=confidence,
                classified_by=ClassifiedBy.RULE,
            )
        )
    return classified


def match_category(narration: str) -> Tuple[Optional[str], float]:
    lowered = narration.lower()
    for rule in CATEGORY_RULES:
        if any(_keyword_pattern(keyword).search(lowered) for keyword in rule.keywords):
            return rule.category, rule.confidence
    return None, 0.0


def match_platform(narration: str) -> Optional[str]:
    return _first_label(narration, PLATFORM_RULES)


def match_payment_method(narration: str) -> Optional[str]:
    return _first_label(narration, PAYMENT_RULES)


def merchant_key(narration: str, platform: Optional[str] = None) -> str:
    """
    Normalized merchant fingerprint used for recurring detection.

    A matched platform is the strongest key. Otherwise the first narration word
    that is not a payment-rail marker, a number, or shorter than four letters.
    """

    if platform:
        return platform.lower()
    cleaned = re.sub(r"[^a-z0-9 ]", " ", narration.lower())
    for word in cleaned.split():
        if len(word) <= 3 or word.isdigit() or word in MERCHANT_KEY_STOPWORDS:
            continue
        if sum(char.isdigit() for char in word) > len(word) // 2:
            continue
        return word
    return ""


def _first_label(narration: str, rules: Sequence[LabelRule]) -> Optional[str]:
    lowered = narration.lower()
    for rule in rules:
        if any(_keyword_pattern(keyword).search(lowered) for keyword in rule.keywords):
            return rule.label
    return None


@lru_cache(maxsize=512)
def _keyword_pattern(keyword: str) -> "re.Pattern[str]":
    # Short keywords ("ola", "bus", "pg") must stand alone so "cola" or
    # "business" do not match; longer ones may run into trailing text
    # ("SWIGGYINSTAMART").
    escaped = re.escape(keyword)
    if not keyword[0].isalnum():
        return re.compile(escaped)
    if len(keyword) <= 4:
        return re.compile(rf"(?<![a-z]){escaped}(?![a-z])")
    return re.compile(rf"(?<![a-z]){escaped}")
