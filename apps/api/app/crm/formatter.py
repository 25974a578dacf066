from __future__ import annotations

import re
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from datetime import date, datetime, time, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, ClassVar, Literal

from email_validator import EmailNotValidError, validate_email
from pydantic import AnyHttpUrl, TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from app.crm.errors import TypeCoercionError

DeclaredType = Literal[
    "short_text",
    "long_text",
    "integer",
    "decimal",
    "date",
    "datetime",
    "boolean",
    "single_select",
    "multi_select",
    "email",
    "phone",
    "url",
    "tax_id_individual",
    "tax_id_business",
]

DECLARED_TYPES: tuple[str, ...] = (
    "short_text",
    "long_text",
    "integer",
    "decimal",
    "date",
    "datetime",
    "boolean",
    "single_select",
    "multi_select",
    "email",
    "phone",
    "url",
    "tax_id_individual",
    "tax_id_business",
)
SELECT_TYPES = {"single_select", "multi_select"}
NUMBER_TYPES = {"integer", "decimal"}
DATE_TYPES = {"date", "datetime"}
LIST_TYPES = {"multi_select"}
BOOLEAN_TYPES = {"boolean"}

_STORAGE_COLUMNS = {
    "integer": "number_value",
    "decimal": "number_value",
    "date": "date_value",
    "datetime": "date_value",
    "boolean": "boolean_value",
    "multi_select": "json_value",
}
VALUE_COLUMNS = ("text_value", "number_value", "date_value", "boolean_value", "json_value")

# Bounds of the number_value column, Numeric(NUMBER_PRECISION, NUMBER_SCALE).
NUMBER_PRECISION = 24
NUMBER_SCALE = 8

_TRUE_WORDS = {"true", "1", "yes", "y", "on", "sim", "s"}
_FALSE_WORDS = {"false", "0", "no", "n", "off", "nao", "não"}
_PHONE_RE = re.compile(r"^\+?[\d\s().-]+$")
_LEGACY_LIST_SEPARATOR = "|"
_url_adapter = TypeAdapter(AnyHttpUrl)


@dataclass(frozen=True, slots=True)
class TextValue:
    column: ClassVar[str] = "text_value"
    text: str

    @property
    def payload(self) -> str:
        return self.text


@dataclass(frozen=True, slots=True)
class NumberValue:
    column: ClassVar[str] = "number_value"
    number: Decimal

    @property
    def payload(self) -> Decimal:
        return self.number


@dataclass(frozen=True, slots=True)
class DateValue:
    column: ClassVar[str] = "date_value"
    moment: datetime

    @property
    def payload(self) -> datetime:
        return self.moment


@dataclass(frozen=True, slots=True)
class BoolValue:
    column: ClassVar[str] = "boolean_value"
    flag: bool

    @property
    def payload(self) -> bool:
        return self.flag


@dataclass(frozen=True, slots=True)
class ListValue:
    column: ClassVar[str] = "json_value"
    items: tuple[str, ...]

    @property
    def payload(self) -> list[str]:
        return list(self.items)


StoredValue = TextValue | NumberValue | DateValue | BoolValue | ListValue
CanonicalValue = str | float | date | datetime | bool | list[str]


@dataclass(frozen=True, slots=True)
class LocaleFormat:
    date_pattern: str
    thousands: str
    decimal: str
    yes: str
    no: str


_LOCALES: dict[str, LocaleFormat] = {
    "en-US": LocaleFormat("%m/%d/%Y", ",", ".", "Yes", "No"),
    "en-GB": LocaleFormat("%d/%m/%Y", ",", ".", "Yes", "No"),
    "pt-BR": LocaleFormat("%d/%m/%Y", ".", ",", "Sim", "Não"),
    "es-ES": LocaleFormat("%d/%m/%Y", ".", ",", "Sí", "No"),
}
_LANGUAGE_DEFAULTS = {"en": "en-US", "pt": "pt-BR", "es": "es-ES"}


def storage_column(declared_type: str) -> str:
    """Name of the single typed column a declared type is stored in."""
    _ensure_known_type(declared_type)
    return _STORAGE_COLUMNS.get(declared_type, "text_value")


def from_input(
    declared_type: str,
    raw_value: Any,
    *,
    options: Sequence[str] | None = None,
    validation_rules: Mapping[str, Any] | None = None,
) -> StoredValue | None:
    """Coerce raw user input into the storage representation for ``declared_type``.

    Empty input (``None``, blank strings, empty lists) yields ``None``, which the
    value store treats as "no value". ``options`` is only checked for select
    types; passing ``None`` skips the membership check.
    """
    _ensure_known_type(declared_type)
    if _is_blank(raw_value):
        return None
    rules = validation_rules or {}

    if declared_type in NUMBER_TYPES:
        number = _parse_decimal(declared_type, raw_value)
        if declared_type == "integer":
            if number != number.to_integral_value():
                raise TypeCoercionError(declared_type, "must be a whole number")
            number = Decimal(int(number))
        _check_number_rules(declared_type, number, rules)
        return NumberValue(number)

    if declared_type in DATE_TYPES:
        moment = _parse_moment(declared_type, raw_value)
        _check_date_rules(declared_type, moment, rules)
        return DateValue(moment)

    if declared_type == "boolean":
        return BoolValue(_parse_bool(raw_value))

    if declared_type == "multi_select":
        return _parse_multi_select(raw_value, options)

    text = _require_text(declared_type, raw_value)
    if declared_type == "single_select":
        if options is not None and text not in options:
            raise TypeCoercionError(declared_type, f"must be one of: {', '.join(options)}")
        return TextValue(text)
    if declared_type == "email":
        return TextValue(_parse_email(text))
    if declared_type == "phone":
        return TextValue(_parse_phone(text))
    if declared_type == "url":
        return TextValue(_parse_url(text))
    if declared_type == "tax_id_individual":
        return TextValue(_parse_tax_id(declared_type, text, 11, _valid_cpf))
    if declared_type == "tax_id_business":
        return TextValue(_parse_tax_id(declared_type, text, 14, _valid_cnpj))

    _check_text_rules(declared_type, text, rules)
    return TextValue(text)


def stored_from_columns(
    declared_type: str,
    *,
    text_value: str | None = None,
    number_value: Decimal | float | int | None = None,
    date_value: datetime | date | None = None,
    boolean_value: bool | None = None,
    json_value: Any = None,
) -> StoredValue | None:
    """Rebuild a tagged value from a storage row; all-null columns mean no value."""
    if declared_type in LIST_TYPES:
        if isinstance(json_value, list):
            return ListValue(tuple(str(item) for item in json_value))
        if isinstance(json_value, str):
            return ListValue(tuple(_split_legacy_list(json_value)))
        if text_value is not None:
            return ListValue(tuple(_split_legacy_list(text_value)))
        return None

    if number_value is not None:
        return NumberValue(Decimal(str(number_value)))
    if date_value is not None:
        if not isinstance(date_value, datetime):
            date_value = datetime.combine(date_value, time.min)
        if date_value.tzinfo is None:
            date_value = date_value.replace(tzinfo=timezone.utc)
        return DateValue(date_value)
    if boolean_value is not None:
        return BoolValue(bool(boolean_value))
    if text_value is not None:
        return TextValue(text_value)
    if isinstance(json_value, list):
        return ListValue(tuple(str(item) for item in json_value))
    return None


def to_canonical(declared_type: str, stored_value: StoredValue | None) -> CanonicalValue | None:
    """Comparable in-memory form of a stored value, or ``None`` when absent."""
    _ensure_known_type(declared_type)
    if stored_value is None:
        return None

    if isinstance(stored_value, ListValue):
        return list(stored_value.items)
    if isinstance(stored_value, NumberValue):
        return float(stored_value.number)
    if isinstance(stored_value, BoolValue):
        return stored_value.flag
    if isinstance(stored_value, DateValue):
        moment = stored_value.moment
        if moment.tzinfo is None:
            moment = moment.replace(tzinfo=timezone.utc)
        if declared_type == "datetime":
            return moment.astimezone(timezone.utc)
        return moment.date()

    text = stored_value.text
    if declared_type in LIST_TYPES:
        return _split_legacy_list(text)
    if declared_type in NUMBER_TYPES | DATE_TYPES | BOOLEAN_TYPES:
        # Text left in a typed field by older imports.
        try:
            return to_canonical(declared_type, from_input(declared_type, text))
        except TypeCoercionError:
            return text
    return text


def canonicalize_input(
    declared_type: str,
    raw_value: Any,
    *,
    options: Sequence[str] | None = None,
    validation_rules: Mapping[str, Any] | None = None,
) -> CanonicalValue | None:
    stored = from_input(declared_type, raw_value, options=options, validation_rules=validation_rules)
    return to_canonical(declared_type, stored)


def display_string(declared_type: str, stored_value: StoredValue | None, locale: str = "en-US") -> str:
    """Human readable rendering of a stored value for list views and cards."""
    canonical = to_canonical(declared_type, stored_value)
    if canonical is None:
        return ""
    fmt = resolve_locale(locale)

    if isinstance(canonical, bool):
        return fmt.yes if canonical else fmt.no
    if isinstance(canonical, list):
        return ", ".join(canonical)
    if isinstance(canonical, datetime):
        return canonical.strftime(f"{fmt.date_pattern} %H:%M")
    if isinstance(canonical, date):
        return canonical.strftime(fmt.date_pattern)
    if isinstance(canonical, float) and isinstance(stored_value, NumberValue):
        return _format_number(stored_value.number, fmt, integer=declared_type == "integer")
    if declared_type == "tax_id_individual" and len(canonical) == 11 and canonical.isdigit():
        return f"{canonical[:3]}.{canonical[3:6]}.{canonical[6:9]}-{canonical[9:]}"
    if declared_type == "tax_id_business" and len(canonical) == 14 and canonical.isdigit():
        return f"{canonical[:2]}.{canonical[2:5]}.{canonical[5:8]}/{canonical[8:12]}-{canonical[12:]}"
    return str(canonical)


def coerce_for_storage(declared_type: str, raw_value: Any, **kwargs: Any) -> StoredValue | None:
    return from_input(declared_type, raw_value, **kwargs)


def coerce_for_display(declared_type: str, stored_value: StoredValue | None, locale: str = "en-US") -> str:
    return display_string(declared_type, stored_value, locale)


def resolve_locale(locale: str | None) -> LocaleFormat:
    if not locale:
        return _LOCALES["en-US"]
    normalized = locale.replace("_", "-")
    parts = normalized.split("-")
    key = parts[0].lower() if len(parts) == 1 else f"{parts[0].lower()}-{parts[1].upper()}"
    if key in _LOCALES:
        return _LOCALES[key]
    return _LOCALES[_LANGUAGE_DEFAULTS.get(parts[0].lower(), "en-US")]


def _ensure_known_type(declared_type: str) -> None:
    if declared_type not in DECLARED_TYPES:
        raise TypeCoercionError(declared_type, "unsupported declared_type")


def _is_blank(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    if isinstance(value, (list, tuple)):
        return all(_is_blank(item) for item in value)
    return False


def _split_legacy_list(value: str) -> list[str]:
    return [item.strip() for item in value.split(_LEGACY_LIST_SEPARATOR) if item.strip()]


def _require_text(declared_type: str, raw_value: Any) -> str:
    if not isinstance(raw_value, str):
        raise TypeCoercionError(declared_type, "must be text")
    return raw_value.strip()


def _parse_decimal(declared_type: str, raw_value: Any) -> Decimal:
    if isinstance(raw_value, bool):
        raise TypeCoercionError(declared_type, "must be a number")
    if isinstance(raw_value, (int, Decimal)):
        number = Decimal(raw_value)
    elif isinstance(raw_value, float):
        number = Decimal(str(raw_value))
    elif isinstance(raw_value, str):
        candidate = raw_value.strip().replace(" ", "")
        if "," in candidate and "." not in candidate:
            candidate = candidate.replace(",", ".")
        try:
            number = Decimal(candidate)
        except InvalidOperation:
            raise TypeCoercionError(declared_type, "must be a number")
    else:
        raise TypeCoercionError(declared_type, "must be a number")

    if not number.is_finite():
        raise TypeCoercionError(declared_type, "must be a finite number")
    exponent = number.normalize().as_tuple().exponent
    if isinstance(exponent, int) and -exponent > NUMBER_SCALE:
        raise TypeCoercionError(declared_type, f"must have at most {NUMBER_SCALE} decimal places")
    if abs(number) >= Decimal(10) ** (NUMBER_PRECISION - NUMBER_SCALE):
        raise TypeCoercionError(declared_type, f"must have at most {NUMBER_PRECISION - NUMBER_SCALE} integer digits")
    return number


def _parse_moment(declared_type: str, raw_value: Any) -> datetime:
    if isinstance(raw_value, datetime):
        moment = raw_value
    elif isinstance(raw_value, date):
        moment = datetime.combine(raw_value, time.min)
    elif isinstance(raw_value, str):
        candidate = raw_value.strip()
        if candidate.endswith("Z"):
            candidate = f"{candidate[:-1]}+00:00"
        try:
            if declared_type == "date" and len(candidate) == 10:
                moment = datetime.combine(date.fromisoformat(candidate), time.min)
            else:
                moment = datetime.fromisoformat(candidate)
        except ValueError:
            raise TypeCoercionError(declared_type, "must be an ISO 8601 date")
    else:
        raise TypeCoercionError(declared_type, "must be a date")

    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    else:
        moment = moment.astimezone(timezone.utc)
    if declared_type == "date":
        moment = datetime.combine(moment.date(), time.min, tzinfo=timezone.utc)
    return moment


def _parse_bool(raw_value: Any) -> bool:
    if isinstance(raw_value, bool):
        return raw_value
    if isinstance(raw_value, int) and raw_value in (0, 1):
        return bool(raw_value)
    if isinstance(raw_value, str):
        word = raw_value.strip().lower()
        if word in _TRUE_WORDS:
            return True
        if word in _FALSE_WORDS:
            return False
    raise TypeCoercionError("boolean", "must be a boolean")


def _parse_multi_select(raw_value: Any, options: Sequence[str] | None) -> ListValue | None:
    if isinstance(raw_value, str):
        candidates: list[Any] = [raw_value]
    elif isinstance(raw_value, (list, tuple)):
        candidates = list(raw_value)
    else:
        raise TypeCoercionError("multi_select", "must be a list of options")

    items: list[str] = []
    for item in candidates:
        if not isinstance(item, str):
            raise TypeCoercionError("multi_select", "options must be text")
        cleaned = item.strip()
        if not cleaned or cleaned in items:
            continue
        if options is not None and cleaned not in options:
            raise TypeCoercionError("multi_select", f"must be any of: {', '.join(options)}")
        items.append(cleaned)
    if not items:
        return None
    return ListValue(tuple(items))


def _parse_email(text: str) -> str:
    try:
        return validate_email(text, check_deliverability=False).normalized
    except EmailNotValidError as exc:
        raise TypeCoercionError("email", f"must be a valid email address ({exc})")


def _parse_phone(text: str) -> str:
    digits = [char for char in text if char.isdigit()]
    if not _PHONE_RE.match(text) or not 8 <= len(digits) <= 15:
        raise TypeCoercionError("phone", "must be a phone number with 8 to 15 digits")
    return text


def _parse_url(text: str) -> str:
    candidate = text if "://" in text else f"https://{text}"
    try:
        _url_adapter.validate_python(candidate)
    except PydanticValidationError:
        raise TypeCoercionError("url", "must be an http(s) URL")
    return candidate


def _parse_tax_id(declared_type: str, text: str, length: int, check: Any) -> str:
    if any(not (char.isdigit() or char in ".-/ ") for char in text):
        raise TypeCoercionError(declared_type, "must contain only digits and punctuation")
    digits = "".join(char for char in text if char.isdigit())
    if len(digits) != length or not check(digits):
        raise TypeCoercionError(declared_type, "has an invalid check digit")
    return digits


def _valid_cpf(digits: str) -> bool:
    if len(set(digits)) == 1:
        return False
    for position in (9, 10):
        total = sum(int(digits[index]) * (position + 1 - index) for index in range(position))
        if (total * 10) % 11 % 10 != int(digits[position]):
            return False
    return True


def _valid_cnpj(digits: str) -> bool:
    if len(set(digits)) == 1:
        return False
    weights = [5, 4, 3, 2, 9, 8, 7, 6, 5, 4, 3, 2]
    for position, factors in ((12, weights), (13, [6, *weights])):
        remainder = sum(int(digits[index]) * factors[index] for index in range(position)) % 11
        expected = 0 if remainder < 2 else 11 - remainder
        if expected != int(digits[position]):
            return False
    return True


def _check_text_rules(declared_type: str, text: str, rules: Mapping[str, Any]) -> None:
    min_length = rules.get("min_length")
    max_length = rules.get("max_length")
    pattern = rules.get("regex")
    if isinstance(min_length, int) and len(text) < min_length:
        raise TypeCoercionError(declared_type, f"must have at least {min_length} characters")
    if isinstance(max_length, int) and len(text) > max_length:
        raise TypeCoercionError(declared_type, f"must have at most {max_length} characters")
    if isinstance(pattern, str) and pattern and re.fullmatch(pattern, text) is None:
        raise TypeCoercionError(declared_type, "does not match the required pattern")


def _check_number_rules(declared_type: str, number: Decimal, rules: Mapping[str, Any]) -> None:
    minimum = rules.get("min")
    maximum = rules.get("max")
    precision = rules.get("precision")
    if minimum is not None and number < Decimal(str(minimum)):
        raise TypeCoercionError(declared_type, f"must be >= {minimum}")
    if maximum is not None and number > Decimal(str(maximum)):
        raise TypeCoercionError(declared_type, f"must be <= {maximum}")
    if isinstance(precision, int) and declared_type == "decimal":
        exponent = number.as_tuple().exponent
        places = -exponent if isinstance(exponent, int) and exponent < 0 else 0
        if places > precision:
            raise TypeCoercionError(declared_type, f"must have at most {precision} decimal places")


def _check_date_rules(declared_type: str, moment: datetime, rules: Mapping[str, Any]) -> None:
    for key, message in (("min_date", "on or after"), ("max_date", "on or before")):
        bound_raw = rules.get(key)
        if not isinstance(bound_raw, str) or not bound_raw:
            continue
        try:
            bound = date.fromisoformat(bound_raw[:10])
        except ValueError:
            continue
        if key == "min_date" and moment.date() < bound:
            raise TypeCoercionError(declared_type, f"must be {message} {bound.isoformat()}")
        if key == "max_date" and moment.date() > bound:
            raise TypeCoercionError(declared_type, f"must be {message} {bound.isoformat()}")


def _format_number(number: Decimal, fmt: LocaleFormat, *, integer: bool) -> str:
    if integer:
        rendered = f"{int(number):,}"
    else:
        normalized = number.normalize()
        exponent = normalized.as_tuple().exponent
        places = -exponent if isinstance(exponent, int) and exponent < 0 else 0
        rendered = f"{normalized:,.{max(places, 2)}f}"
    return rendered.replace(",", "\x00").replace(".", fmt.decimal).replace("\x00", fmt.thousands)
