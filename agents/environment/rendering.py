"""
Declarative config rendering: base template + environment id -> EnvironmentSpec.

Handles:
- Loading the multi-document YAML base template (the only I/O step)
- Role discovery via the envops.io/role annotation
- Fixed patches: name substitution, namespace injection, label injection
- Per-environment overlay patches, merged per role

render() is pure: the base template is never mutated and nothing is read or
written outside the arguments.
"""

from __future__ import annotations

import copy
import logging
from pathlib import Path
from typing import Any, Mapping, Optional

import yaml

from config.settings import (
    ENVIRONMENT_ID_TOKEN, ENVIRONMENT_LABEL, MANAGED_BY_LABEL, MANAGED_BY_VALUE,
    REQUIRED_ROLES, ROLE_ANNOTATION, ROLE_CREDENTIALS,
)
from framework.errors import TemplateError
from framework.models import EnvironmentSpec

logger = logging.getLogger("envops.rendering")

KNOWN_ROLES = REQUIRED_ROLES + (ROLE_CREDENTIALS,)


def load_base_template(path: Path) -> list[dict]:
    """Parse a multi-document YAML template into a list of manifests."""
    try:
        with open(path, "r", encoding="utf-8") as f:
            documents = [doc for doc in yaml.safe_load_all(f) if doc is not None]
    except OSError as e:
        raise TemplateError(f"cannot read base template {path}: {e}") from e
    except yaml.YAMLError as e:
        raise TemplateError(f"base template {path} is not valid YAML: {e}") from e

    for index, doc in enumerate(documents):
        if not isinstance(doc, dict):
            raise TemplateError(f"document {index} in {path} is not a mapping")
    logger.debug(f"Loaded {len(documents)} manifests from {path}")
    return documents


def _substitute(value: Any, variables: Mapping[str, str]) -> Any:
    """Return a copy of value with every ${TOKEN} replaced in string leaves."""
    if isinstance(value, str):
        for token, replacement in variables.items():
            value = value.replace(token, replacement)
        return value
    if isinstance(value, Mapping):
        return {k: _substitute(v, variables) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_substitute(v, variables) for v in value]
    return value


def _merge(base: dict, patch: Mapping[str, Any]) -> dict:
    """
    Overlay patch onto base, returning a new dict.

    Mappings merge recursively, any other value replaces, and a None value
    removes the key (JSON merge patch semantics).
    """
    merged = dict(base)
    for key, value in patch.items():
        if value is None:
            merged.pop(key, None)
        elif isinstance(value, Mapping) and isinstance(merged.get(key), dict):
            merged[key] = _merge(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def _role_of(manifest: dict, index: int) -> str:
    metadata = manifest.get("metadata")
    if not manifest.get("kind") or not isinstance(metadata, dict) or not metadata.get("name"):
        raise TemplateError(f"manifest {index} needs 'kind' and 'metadata.name'")
    role = (metadata.get("annotations") or {}).get(ROLE_ANNOTATION)
    if role not in KNOWN_ROLES:
        raise TemplateError(
            f"{manifest['kind']}/{metadata['name']}: annotation {ROLE_ANNOTATION} must be one of "
            f"{', '.join(KNOWN_ROLES)} (got {role!r})"
        )
    return role


def _scope(manifest: dict, environment_id: str, labels: Mapping[str, str]) -> dict:
    metadata = dict(manifest["metadata"])
    metadata["namespace"] = environment_id
    metadata["labels"] = {**(metadata.get("labels") or {}), **labels}
    return {**manifest, "metadata": metadata}


def render(base_template: list[Mapping[str, Any]], environment_id: str,
           overrides: Optional[Mapping[str, Any]] = None) -> EnvironmentSpec:
    """
    Render the environment-scoped resource set.

    overrides keys (all optional):
    - variables: extra ${NAME} substitutions
    - labels: extra labels for every resource
    - annotations: extra annotations for the synthesized Namespace
    - patches: {role: partial manifest} merged onto that role
    """
    if not environment_id:
        raise TemplateError("environment id is empty")
    overrides = overrides or {}

    variables = {ENVIRONMENT_ID_TOKEN: environment_id}
    for name, value in (overrides.get("variables") or {}).items():
        variables[f"${{{name}}}"] = str(value)
    labels = {
        MANAGED_BY_LABEL: MANAGED_BY_VALUE,
        ENVIRONMENT_LABEL: environment_id,
        **{k: str(v) for k, v in (overrides.get("labels") or {}).items()},
    }

    by_role: dict[str, list[dict]] = {role: [] for role in KNOWN_ROLES}
    for index, raw in enumerate(base_template):
        if not isinstance(raw, Mapping):
            raise TemplateError(f"manifest {index} is not a mapping")
        manifest = _substitute(raw, variables)
        by_role[_role_of(manifest, index)].append(manifest)

    for role in REQUIRED_ROLES:
        if len(by_role[role]) != 1:
            raise TemplateError(f"base template needs exactly one '{role}' manifest, found {len(by_role[role])}")

    for role, partial in (overrides.get("patches") or {}).items():
        if role not in KNOWN_ROLES:
            raise TemplateError(f"patch targets unknown role '{role}'")
        if not isinstance(partial, Mapping):
            raise TemplateError(f"patch for role '{role}' must be a mapping")
        patch = _substitute(partial, variables)
        by_role[role] = [_merge(m, patch) for m in by_role[role]]

    namespace = {
        "apiVersion": "v1",
        "kind": "Namespace",
        "metadata": {
            "name": environment_id,
            "labels": dict(labels),
            "annotations": {k: str(v) for k, v in (overrides.get("annotations") or {}).items()},
        },
    }

    spec = EnvironmentSpec(
        environment_id=environment_id,
        namespace=namespace,
        database=_scope(by_role["database"][0], environment_id, labels),
        service=_scope(by_role["service"][0], environment_id, labels),
        exposure=_scope(by_role["exposure"][0], environment_id, labels),
        credentials=tuple(_scope(m, environment_id, labels) for m in by_role[ROLE_CREDENTIALS]),
        labels=labels,
    )
    logger.debug(f"Rendered {environment_id}: {len(spec.manifests(include_exposure=True))} manifests")
    return spec
