"""
Patient detail extraction for booking.

A chain of extractors, each reading the conversation a different way:
- LabeledFieldExtractor: "Name: Ana Souza" style fields (assistant summaries)
- ConversationalPhraseExtractor: "my name is ...", "I'm 42 years old"
- EmbeddedCandidateExtractor: phone numbers, ages and keywords anywhere in text
- SenderMetadataExtractor: what the messaging gateway told us about the sender

Earlier extractors win; later ones only fill gaps. Whatever is still
missing gets a safe fallback so event creation never fails on a field.
"""

import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, fields
from typing import Optional, Sequence

from appointment_bot.core.phone import normalize_phone

NOT_INFORMED = "not informed"
DEFAULT_NAME = "Patient"

MODALITY_IN_PERSON = "in-person"
MODALITY_TELEMEDICINE = "telemedicine"

_TELEMEDICINE = re.compile(r"\b(tele\s?-?medicine|online|video|virtual|remote|telehealth)\b", re.I)
_IN_PERSON = re.compile(r"\b(in[\s-]person|face[\s-]to[\s-]face|at the (clinic|office)|presential)\b", re.I)

# Extra hints for the default visit reasons
REASON_HINTS: dict[str, tuple[str, ...]] = {
    "pre-anesthetic evaluation": ("pre-anesthetic", "pre anesthetic", "preanesthetic", "anesthesia", "surgery"),
    "pain management": ("pain",),
}


@dataclass
class PatientDetails:
    """Details needed to title and describe a calendar event."""

    name: Optional[str] = None
    age: Optional[str] = None
    phone: Optional[str] = None
    reason: Optional[str] = None
    modality: Optional[str] = None

    def merge(self, other: "PatientDetails") -> "PatientDetails":
        """Fill missing fields from other."""
        return PatientDetails(
            **{f.name: getattr(self, f.name) or getattr(other, f.name) for f in fields(self)}
        )

    def is_complete(self) -> bool:
        return all(getattr(self, f.name) for f in fields(self))


@dataclass
class ExtractionInput:
    """Everything the chain may read, most authoritative text first."""

    texts: list[str] = field(default_factory=list)
    sender_phone: Optional[str] = None
    sender_name: Optional[str] = None


def detect_modality(text: str) -> Optional[str]:
    """Map free text to a modality, telemedicine taking precedence."""
    if _TELEMEDICINE.search(text or ""):
        return MODALITY_TELEMEDICINE
    if _IN_PERSON.search(text or ""):
        return MODALITY_IN_PERSON
    return None


def match_reason(text: str, reasons: Sequence[str]) -> Optional[str]:
    """Map free text onto the closed set of visit reasons."""
    lowered = (text or "").lower()
    if not lowered:
        return None
    for reason in reasons:
        hints = REASON_HINTS.get(reason.lower(), ()) + (reason.lower(),)
        if any(hint in lowered for hint in hints):
            return reason
    return None


def _clean_name(raw: str) -> Optional[str]:
    name = re.sub(r"[^\w\s'.-]", " ", raw or "").strip(" .-")
    name = re.sub(r"\s+", " ", name)
    words = name.split(" ")
    if not name or len(words) > 6 or any(ch.isdigit() for ch in name):
        return None
    return " ".join(w.capitalize() if w.islower() else w for w in words)


def _clean_age(raw: str) -> Optional[str]:
    try:
        age = int(raw)
    except (TypeError, ValueError):
        return None
    return str(age) if 0 < age < 120 else None


class DetailExtractor(ABC):
    """One way of reading patient details out of a conversation."""

    def __init__(self, reasons: Sequence[str]):
        self.reasons = list(reasons)

    @abstractmethod
    def extract(self, data: ExtractionInput) -> PatientDetails:
        ...


class LabeledFieldExtractor(DetailExtractor):
    """Reads "Field: value" lines."""

    _PATTERNS = {
        "name": re.compile(r"\bname\s*[:=]\s*([^\n,;]+)", re.I),
        "age": re.compile(r"\bage\s*[:=]\s*(\d{1,3})", re.I),
        "phone": re.compile(r"\b(?:phone|whatsapp|telephone|mobile)\s*[:=]\s*([+\d()\s-]{8,20})", re.I),
        "reason": re.compile(r"\breason(?:\s+for\s+(?:the\s+)?visit)?\s*[:=]\s*([^\n;]+)", re.I),
        "modality": re.compile(r"\b(?:modality|type)\s*[:=]\s*([^\n,;]+)", re.I),
    }

    def extract(self, data: ExtractionInput) -> PatientDetails:
        details = PatientDetails()
        for text in data.texts:
            found = PatientDetails()
            if m := self._PATTERNS["name"].search(text):
                found.name = _clean_name(m.group(1))
            if m := self._PATTERNS["age"].search(text):
                found.age = _clean_age(m.group(1))
            if m := self._PATTERNS["phone"].search(text):
                found.phone = normalize_phone(m.group(1))
            if m := self._PATTERNS["reason"].search(text):
                found.reason = match_reason(m.group(1), self.reasons)
            if m := self._PATTERNS["modality"].search(text):
                found.modality = detect_modality(m.group(1))
            details = details.merge(found)
        return details


class ConversationalPhraseExtractor(DetailExtractor):
    """Reads first-person phrases the patient typed."""

    _NAME = re.compile(
        r"\b(?:my name is|my name's|i am|i'm|this is|name is)\s+"
        r"([A-Za-zÀ-ÿ'][A-Za-zÀ-ÿ' -]{1,60}?)(?=\s*(?:[,.;!\n]|\band\b|\bi'm\b|\bi am\b|$))",
        re.I,
    )
    _AGE = re.compile(r"\b(?:i am|i'm|aged?)\s+(\d{1,3})(?:\s*(?:years?|yrs?)(?:\s+old)?)?\b", re.I)
    _NOT_NAMES = {
        "a", "an", "the", "not", "just", "here", "fine", "good", "ok", "okay", "sorry",
        "available", "interested", "looking", "calling", "trying", "going", "having",
        "feeling", "free", "busy", "also", "still", "in", "on", "at", "from", "with",
    }
    _FOR = re.compile(r"\b(?:for|about|because of|regarding)\s+(?:a\s+|an\s+|the\s+|my\s+)?([^,.;\n]+)", re.I)

    def extract(self, data: ExtractionInput) -> PatientDetails:
        details = PatientDetails()
        for text in data.texts:
            found = PatientDetails()
            if m := self._AGE.search(text):
                found.age = _clean_age(m.group(1))
            for m in self._NAME.finditer(text):
                candidate = m.group(1).strip()
                if candidate.split(" ")[0].lower() in self._NOT_NAMES:
                    continue
                found.name = _clean_name(candidate)
                if found.name:
                    break
            for m in self._FOR.finditer(text):
                found.reason = match_reason(m.group(1), self.reasons)
                if found.reason:
                    break
            found.modality = detect_modality(text)
            details = details.merge(found)
        return details


class EmbeddedCandidateExtractor(DetailExtractor):
    """Reads loose candidates: phone-like digit runs, "42 years", reason keywords."""

    _PHONE = re.compile(r"(?:\+?55[\s-]?)?\(?\d{2}\)?[\s-]?\d{4,5}[\s-]?\d{4}\b")
    _AGE = re.compile(r"\b(\d{1,3})\s*(?:years?|yrs?|y/o)\b", re.I)

    def extract(self, data: ExtractionInput) -> PatientDetails:
        details = PatientDetails()
        for text in data.texts:
            found = PatientDetails()
            for m in self._PHONE.finditer(text):
                found.phone = normalize_phone(m.group(0))
                if found.phone:
                    break
            if m := self._AGE.search(text):
                found.age = _clean_age(m.group(1))
            found.reason = match_reason(text, self.reasons)
            found.modality = detect_modality(text)
            details = details.merge(found)
        return details


class SenderMetadataExtractor(DetailExtractor):
    """Falls back to the gateway's sender phone and profile name."""

    def extract(self, data: ExtractionInput) -> PatientDetails:
        return PatientDetails(
            name=_clean_name(data.sender_name or ""),
            phone=normalize_phone(data.sender_phone),
        )


def default_chain(reasons: Sequence[str]) -> list[DetailExtractor]:
    return [
        LabeledFieldExtractor(reasons),
        ConversationalPhraseExtractor(reasons),
        EmbeddedCandidateExtractor(reasons),
        SenderMetadataExtractor(reasons),
    ]


def extract_details(
    data: ExtractionInput,
    reasons: Sequence[str],
    chain: Optional[Sequence[DetailExtractor]] = None,
) -> PatientDetails:
    """
    Run the extractor chain and apply safe fallbacks.

    Returns:
        PatientDetails with every field set
    """
    details = PatientDetails()
    for extractor in chain or default_chain(reasons):
        details = details.merge(extractor.extract(data))
        if details.is_complete():
            break

    return PatientDetails(
        name=details.name or DEFAULT_NAME,
        age=details.age or NOT_INFORMED,
        phone=details.phone or data.sender_phone or NOT_INFORMED,
        reason=details.reason or NOT_INFORMED,
        modality=details.modality or NOT_INFORMED,
    )
