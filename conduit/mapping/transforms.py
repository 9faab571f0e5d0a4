"""Transform catalog applied to mapped values.

Every transform has the signature ``(value, config, source) -> value``.
"""

from __future__ import annotations

import json
import logging
import re
from datetime import date, datetime, timezone
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from email.utils import parsedate_to_datetime
from typing import Any, Callable, Dict

from babel import Locale, UnknownLocaleError
from babel.numbers import format_decimal

from ..contracts import Transform, TransformType
from ..errors import InvalidDateError, InvalidNumberError, MappingError, PathSyntaxError
from .expressions import evaluate_expression
from .paths import MISSING, get_path

logger = logging.getLogger(__name__)

TransformFunc = Callable[[Any, Dict[str, Any], Any], Any]

_TRANSFORMS: Dict[str, TransformFunc] = {}

_PLACEHOLDER = re.compile(r"\{\{([^}]+)\}\}")
_JS_GROUP_REF = re.compile(r"\$(\$|&|\d{1,2}|<[A-Za-z_][A-Za-z0-9_]*>)")
_REGEX_FLAGS = {
    "i": re.IGNORECASE,
    "m": re.MULTILINE,
    "s": re.DOTALL,
    "x": re.VERBOSE,
    "u": 0,
    "g": 0,
}


def transform(kind: TransformType) -> Callable[[TransformFunc], TransformFunc]:
    """Register a transform implementation under ``kind``."""

    def decorator(func: TransformFunc) -> TransformFunc:
        _TRANSFORMS[kind.value] = func
        return func

    return decorator


def available_transforms() -> list[str]:
    return sorted(_TRANSFORMS)


def apply_transform(value: Any, transform_def: Transform, source: Any) -> Any:
    """Apply ``transform_def`` to ``value``. Unknown transform types pass through."""
    func = _TRANSFORMS.get(transform_def.type)
    if func is None:
        logger.warning("Unknown transform type %r; passing value through", transform_def.type)
        return value
    if value is MISSING:
        value = None
    return func(value, transform_def.config or {}, source)


# ----------------------------------------------------------------------
# Helpers


def _option(config: Dict[str, Any], camel: str, snake: str, default: Any = None) -> Any:
    if camel in config:
        return config[camel]
    return config.get(snake, default)


def stringify(value: Any) -> str:
    """Render ``value`` the way it reads in a JSON document."""
    if isinstance(value, str):
        return value
    if isinstance(value, bool) or value is None:
        return json.dumps(value)
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, (dict, list)):
        return json.dumps(value, default=str)
    return str(value)


def _compile_flags(flags: Any) -> tuple[int, bool]:
    compiled = 0
    text = str(flags or "")
    for flag in text:
        if flag not in _REGEX_FLAGS:
            raise MappingError(f"Unsupported regex flag {flag!r}")
        compiled |= _REGEX_FLAGS[flag]
    return compiled, "g" in text


def _js_replacement(text: str) -> str:
    """Translate ``$1``/``$<name>``/``$&`` group references to ``re`` syntax."""
    escaped = text.replace("\\", "\\\\")

    def convert(match: re.Match) -> str:
        token = match.group(1)
        if token == "$":
            return "$"
        if token == "&":
            return r"\g<0>"
        if token.startswith("<"):
            return rf"\g{token}"
        return rf"\g<{int(token)}>"

    return _JS_GROUP_REF.sub(convert, escaped)


def _to_datetime(value: Any) -> datetime:
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        parsed = datetime(value.year, value.month, value.day)
    elif isinstance(value, (int, float)) and not isinstance(value, bool):
        try:
            parsed = datetime.fromtimestamp(value / 1000, tz=timezone.utc)
        except (OverflowError, OSError, ValueError) as exc:
            raise InvalidDateError(f"Invalid date: {value!r}") from exc
    elif isinstance(value, str) and value.strip():
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            try:
                parsed = parsedate_to_datetime(value.strip())
            except (TypeError, ValueError) as exc:
                raise InvalidDateError(f"Invalid date: {value!r}") from exc
    else:
        raise InvalidDateError(f"Invalid date: {value!r}")

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def _to_decimal(value: Any) -> Decimal:
    if isinstance(value, bool) or value is None:
        raise InvalidNumberError(f"Invalid number: {value!r}")
    try:
        number = Decimal(str(value).strip())
    except (InvalidOperation, ValueError) as exc:
        raise InvalidNumberError(f"Invalid number: {value!r}") from exc
    if not number.is_finite():
        raise InvalidNumberError(f"Invalid number: {value!r}")
    return number


def _matches(value: Any, operator_name: Any, compare: Any) -> bool:
    try:
        if operator_name == "equals":
            return value == compare
        if operator_name == "not_equals":
            return value != compare
        if operator_name == "greater_than":
            return value is not None and value > compare
        if operator_name == "less_than":
            return value is not None and value < compare
    except TypeError:
        return False
    if operator_name == "contains":
        if isinstance(value, (list, tuple, dict)):
            return compare in value
        if value is None:
            return False
        return stringify(compare) in stringify(value)
    if operator_name == "exists":
        return value is not None
    if operator_name == "empty":
        return not value
    logger.warning("Unknown conditional operator %r", operator_name)
    return False


# ----------------------------------------------------------------------
# Catalog


@transform(TransformType.STATIC)
def _static(value: Any, config: Dict[str, Any], source: Any) -> Any:
    return config.get("value")


@transform(TransformType.TEMPLATE)
def _template(value: Any, config: Dict[str, Any], source: Any) -> str:
    template = config.get("template")
    if not isinstance(template, str):
        raise MappingError("template transform requires a 'template' string")

    def resolve(match: re.Match) -> str:
        try:
            resolved = get_path(source, match.group(1).strip())
        except PathSyntaxError:
            return match.group(0)
        if resolved is MISSING:
            return match.group(0)
        return stringify(resolved)

    return _PLACEHOLDER.sub(resolve, template)


@transform(TransformType.FUNCTION)
def _function(value: Any, config: Dict[str, Any], source: Any) -> Any:
    expression = config.get("expression") or config.get("code")
    return evaluate_expression(
        expression, {"value": value, "data": source, "source": source}
    )


@transform(TransformType.CONDITIONAL)
def _conditional(value: Any, config: Dict[str, Any], source: Any) -> Any:
    condition = config.get("condition") or config
    if not isinstance(condition, dict):
        raise MappingError("conditional transform requires a 'condition' object")
    matched = _matches(
        value,
        condition.get("operator"),
        _option(condition, "compareValue", "compare_value"),
    )
    if matched:
        return _option(config, "ifTrue", "if_true")
    return _option(config, "ifFalse", "if_false")


@transform(TransformType.FORMAT_DATE)
def _format_date(value: Any, config: Dict[str, Any], source: Any) -> str:
    parsed = _to_datetime(value)
    pattern = config.get("format")
    if pattern:
        return parsed.strftime(pattern)
    return parsed.isoformat(timespec="milliseconds").replace("+00:00", "Z")


@transform(TransformType.FORMAT_NUMBER)
def _format_number(value: Any, config: Dict[str, Any], source: Any) -> str:
    number = _to_decimal(value)
    decimals = int(config.get("decimals", 2))
    locale_name = str(config.get("locale") or "en-US")
    try:
        locale = Locale.parse(locale_name, sep="-" if "-" in locale_name else "_")
    except (ValueError, UnknownLocaleError) as exc:
        raise MappingError(f"Unknown locale: {locale_name!r}") from exc
    try:
        number = number.quantize(Decimal(1).scaleb(-decimals), rounding=ROUND_HALF_UP)
    except InvalidOperation as exc:
        raise InvalidNumberError(f"Invalid number: {value!r}") from exc
    pattern = "#,##0" + ("." + "0" * decimals if decimals > 0 else "")
    return format_decimal(number, format=pattern, locale=locale)


@transform(TransformType.PARSE_JSON)
def _parse_json(value: Any, config: Dict[str, Any], source: Any) -> Any:
    if not isinstance(value, str):
        return value
    try:
        return json.loads(value)
    except json.JSONDecodeError as exc:
        raise MappingError(f"Invalid JSON: {exc.msg}") from exc


@transform(TransformType.TO_UPPERCASE)
def _to_uppercase(value: Any, config: Dict[str, Any], source: Any) -> Any:
    return None if value is None else stringify(value).upper()


@transform(TransformType.TO_LOWERCASE)
def _to_lowercase(value: Any, config: Dict[str, Any], source: Any) -> Any:
    return None if value is None else stringify(value).lower()


@transform(TransformType.TRIM)
def _trim(value: Any, config: Dict[str, Any], source: Any) -> Any:
    return None if value is None else stringify(value).strip()


@transform(TransformType.SPLIT)
def _split(value: Any, config: Dict[str, Any], source: Any) -> Any:
    if value is None:
        return None
    return stringify(value).split(config.get("delimiter") or ",")


@transform(TransformType.JOIN)
def _join(value: Any, config: Dict[str, Any], source: Any) -> Any:
    if not isinstance(value, (list, tuple)):
        return value
    delimiter = config.get("delimiter")
    if delimiter is None:
        delimiter = ","
    return str(delimiter).join(stringify(item) for item in value)


@transform(TransformType.REPLACE)
def _replace(value: Any, config: Dict[str, Any], source: Any) -> Any:
    if value is None:
        return None
    search = config.get("search")
    if not isinstance(search, str):
        raise MappingError("replace transform requires a 'search' pattern")
    flags, is_global = _compile_flags(config.get("flags", "g"))
    replacement = _js_replacement(str(config.get("replacement", "")))
    try:
        return re.sub(
            search, replacement, stringify(value), count=0 if is_global else 1, flags=flags
        )
    except (re.error, IndexError) as exc:
        raise MappingError(f"Invalid replace configuration: {exc}") from exc


@transform(TransformType.REGEX)
def _regex(value: Any, config: Dict[str, Any], source: Any) -> Any:
    if value is None:
        return None
    pattern = config.get("pattern")
    if not isinstance(pattern, str):
        raise MappingError("regex transform requires a 'pattern'")
    flags, _ = _compile_flags(config.get("flags"))
    try:
        match = re.search(pattern, stringify(value), flags)
        return match.group(int(config.get("group") or 0)) if match else None
    except (re.error, IndexError) as exc:
        raise MappingError(f"Invalid regex configuration: {exc}") from exc
