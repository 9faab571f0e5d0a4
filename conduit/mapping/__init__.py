"""Declarative field mapping between structured documents."""

from __future__ import annotations

import copy
import logging
from typing import Any, Iterable, Mapping, Optional, Union

from ..contracts import FieldMapping
from ..errors import MappingError
from .expressions import evaluate_expression
from .paths import MISSING, get_path, parse_path, set_path
from .transforms import apply_transform, available_transforms

logger = logging.getLogger(__name__)

MappingLike = Union[FieldMapping, Mapping[str, Any]]


def apply_field_mappings(
    mappings: Iterable[MappingLike],
    source: Any,
    static_values: Optional[Mapping[str, Any]] = None,
) -> dict[str, Any]:
    """Build a new document from ``source`` using ``mappings``.

    The output starts as a copy of ``static_values``; mapped values are written
    on top of it in declaration order. Source fields that are not mapped never
    appear in the output. Values are copied so the returned document shares no
    containers with ``source``.
    """
    result: dict[str, Any] = copy.deepcopy(dict(static_values or {}))

    for mapping in mappings:
        if not isinstance(mapping, FieldMapping):
            mapping = FieldMapping.model_validate(mapping)
        try:
            value = get_path(source, mapping.source)
            if mapping.transform is not None:
                value = apply_transform(value, mapping.transform, source)
            elif value is MISSING:
                logger.debug("Source path %s did not resolve; skipping", mapping.source)
                continue
            set_path(result, mapping.target, copy.deepcopy(value))
        except MappingError:
            logger.error(
                "Error applying mapping %s -> %s", mapping.source, mapping.target
            )
            raise
        except (TypeError, ValueError, KeyError) as exc:
            logger.error(
                "Error applying mapping %s -> %s: %s",
                mapping.source,
                mapping.target,
                exc,
            )
            raise MappingError(
                f"Mapping {mapping.source} -> {mapping.target} failed: {exc}"
            ) from exc

    return result


__all__ = [
    "MISSING",
    "apply_field_mappings",
    "apply_transform",
    "available_transforms",
    "evaluate_expression",
    "get_path",
    "parse_path",
    "set_path",
]
