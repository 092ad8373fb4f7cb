"""
Policy file loading.

Policies are authored as YAML, one policy per document; a file may hold
several documents separated by ``---``.

Usage:
    from warden.policies.loader import load_policy_file

    for policy in load_policy_file("policies/bigquery.yaml"):
        await policy_service.apply(policy)
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

import structlog
import yaml
from pydantic import ValidationError

from warden.core.errors import InvalidInputError
from warden.domain.policy import Policy

logger = structlog.get_logger()


class PolicyLoadError(InvalidInputError):
    default_message = "invalid policy document"


def parse_policy(data: Any, source: str = "<string>") -> Policy:
    """Validate one decoded YAML document as a Policy.

    The stored version is assigned by PolicyService, so any ``version`` in
    the document is ignored.
    """
    if not isinstance(data, dict):
        raise PolicyLoadError(f"{source}: policy document must be a mapping", details={"source": source})
    data = {key: value for key, value in data.items() if key != "version"}
    # YAML 1.1 reads a bare ``on`` key as boolean true.
    for requirement in data.get("requirements") or []:
        if isinstance(requirement, dict) and True in requirement:
            requirement["on"] = requirement.pop(True)
    try:
        return Policy.model_validate(data)
    except ValidationError as exc:
        raise PolicyLoadError(
            f"{source}: {exc.error_count()} validation error(s)",
            details={"source": source, "errors": exc.errors(include_url=False)},
        ) from exc


def parse_policies(text: str, source: str = "<string>") -> list[Policy]:
    """
    Parse every policy in a YAML string.

    Args:
        text: YAML content, possibly multi-document
        source: Name used in error messages

    Returns:
        Policies in document order; empty documents are skipped

    Raises:
        PolicyLoadError: If the YAML is malformed or a document is invalid
    """
    try:
        documents = [doc for doc in yaml.safe_load_all(text) if doc is not None]
    except yaml.YAMLError as exc:
        raise PolicyLoadError(f"{source}: malformed YAML: {exc}", details={"source": source}) from exc
    return [parse_policy(doc, source) for doc in documents]


def load_policy_file(file_path: str | Path) -> list[Policy]:
    path = Path(file_path)
    policies = parse_policies(path.read_text(encoding="utf-8"), source=str(path))
    logger.info("policy_file_loaded", path=str(path), policies=len(policies))
    return policies
