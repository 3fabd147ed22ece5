"""Loading access control policies from HuJSON and YAML documents."""

from __future__ import annotations

import json
import logging
import os
import re
from collections.abc import Mapping
from typing import Any, Union

import yaml

from .policy import ACLPolicy, EmptyPolicyError, PolicyError, parse_hosts

log = logging.getLogger(__name__)

_NOT_NEWLINE = re.compile(r"[^\n]")


def _skip_string(text: str, start: int) -> int:
    """Index just past the JSON string starting at ``start``."""
    pos = start + 1
    while pos < len(text):
        char = text[pos]
        if char == "\\":
            pos += 2
            continue
        if char == '"':
            return pos + 1
        pos += 1
    raise PolicyError("unterminated string")


def _strip_comments(text: str) -> str:
    out: list[str] = []
    pos = 0
    while pos < len(text):
        char = text[pos]
        if char == '"':
            end = _skip_string(text, pos)
            out.append(text[pos:end])
            pos = end
        elif text.startswith("//", pos):
            end = text.find("\n", pos)
            if end == -1:
                end = len(text)
            out.append(" " * (end - pos))
            pos = end
        elif text.startswith("/*", pos):
            end = text.find("*/", pos + 2)
            if end == -1:
                raise PolicyError("unterminated block comment")
            out.append(_NOT_NEWLINE.sub(" ", text[pos : end + 2]))
            pos = end + 2
        else:
            out.append(char)
            pos += 1
    return "".join(out)


def _strip_trailing_commas(text: str) -> str:
    out: list[str] = []
    pos = 0
    while pos < len(text):
        char = text[pos]
        if char == '"':
            end = _skip_string(text, pos)
            out.append(text[pos:end])
            pos = end
            continue
        if char == ",":
            ahead = pos + 1
            while ahead < len(text) and text[ahead].isspace():
                ahead += 1
            if ahead < len(text) and text[ahead] in "}]":
                out.append(" ")
                pos += 1
                continue
        out.append(char)
        pos += 1
    return "".join(out)


def standardize_hujson(text: str) -> str:
    """Turn HuJSON into plain JSON by blanking comments and trailing commas."""
    return _strip_trailing_commas(_strip_comments(text))


def _hosts_key(data: Mapping) -> Union[str, None]:
    if "hosts" in data:
        return "hosts"
    for key in data:
        if isinstance(key, str) and key.casefold() == "hosts":
            return key
    return None


def _decode(data: Union[bytes, bytearray, str]) -> str:
    if isinstance(data, str):
        return data
    try:
        return bytes(data).decode("utf-8")
    except UnicodeDecodeError as exc:
        raise PolicyError(f"policy is not valid UTF-8: {exc}") from exc


def _load_yaml(text: str) -> Any:
    try:
        return yaml.safe_load(text)
    except yaml.YAMLError as exc:
        raise PolicyError(f"invalid YAML policy: {exc}") from exc


def _load_hujson(text: str) -> Any:
    try:
        document = json.loads(standardize_hujson(text))
    except json.JSONDecodeError as exc:
        raise PolicyError(f"invalid HuJSON policy: {exc}") from exc
    if isinstance(document, Mapping):
        key = _hosts_key(document)
        if key is not None and isinstance(document[key], Mapping):
            document = dict(document)
            document[key] = parse_hosts(document[key], "/32")
    return document


def load_policy_from_bytes(
    data: Union[bytes, bytearray, str], fmt: str = "hujson"
) -> ACLPolicy:
    """Parse a policy document; ``fmt`` is "yaml", anything else means HuJSON.

    Raises PolicyError when the document cannot be parsed and
    EmptyPolicyError when it defines nothing.
    """
    text = _decode(data)
    document = _load_yaml(text) if fmt == "yaml" else _load_hujson(text)
    policy = ACLPolicy.from_dict(document)
    if policy.is_zero():
        raise EmptyPolicyError("empty policy")
    return policy


def load_policy_from_path(path: Union[str, os.PathLike]) -> ACLPolicy:
    """Read a policy file; ".yml" and ".yaml" files are YAML, others HuJSON."""
    path = os.fspath(path)
    log.debug("Loading ACL policy from path %s", path)
    with open(path, "rb") as handle:
        data = handle.read()
    extension = os.path.splitext(path)[1]
    fmt = "yaml" if extension in (".yml", ".yaml") else "hujson"
    return load_policy_from_bytes(data, fmt)