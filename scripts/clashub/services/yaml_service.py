from __future__ import annotations

import re

import yaml

from ..common.errors import FormatError

_CORE_RESOLVED_TAGS = (
    "tag:yaml.org,2002:bool",
    "tag:yaml.org,2002:int",
    "tag:yaml.org,2002:float",
)


class _CoreSchemaLoader(yaml.SafeLoader):
    """Safe loader that resolves plain booleans and numbers the YAML 1.2 way.

    ``yes``/``no``/``on``/``off`` stay strings, as do sexagesimal values like
    ``12:30`` and leading-zero digit runs like ``012345``.
    """


_CoreSchemaLoader.yaml_implicit_resolvers = {
    first: [(tag, regexp) for tag, regexp in resolvers if tag not in _CORE_RESOLVED_TAGS]
    for first, resolvers in yaml.SafeLoader.yaml_implicit_resolvers.items()
}
_CoreSchemaLoader.add_implicit_resolver(
    "tag:yaml.org,2002:bool",
    re.compile(r"^(?:true|True|TRUE|false|False|FALSE)$"),
    list("tTfF"),
)
_CoreSchemaLoader.add_implicit_resolver(
    "tag:yaml.org,2002:int",
    re.compile(r"^(?:[-+]?(?:0|[1-9][0-9]*)|0o[0-7]+|0x[0-9a-fA-F]+)$"),
    list("-+0123456789"),
)
_CoreSchemaLoader.add_implicit_resolver(
    "tag:yaml.org,2002:float",
    re.compile(
        r"^(?:[-+]?(?:[0-9]+\.[0-9]*|\.[0-9]+)(?:[eE][-+]?[0-9]+)?"
        r"|[-+]?[0-9]+[eE][-+]?[0-9]+"
        r"|[-+]?\.(?:inf|Inf|INF)"
        r"|\.(?:nan|NaN|NAN))$"
    ),
    list("-+0123456789."),
)


def _construct_core_int(loader, node) -> int:
    value = loader.construct_scalar(node)
    if value.startswith("0o"):
        return int(value[2:], 8)
    if value.startswith("0x"):
        return int(value[2:], 16)
    return int(value)


_CoreSchemaLoader.add_constructor("tag:yaml.org,2002:int", _construct_core_int)


class _NoAliasDumper(yaml.SafeDumper):
    """Write repeated objects out in full instead of as anchors and aliases.

    Scalars that need quoting are double-quoted.
    """

    def ignore_aliases(self, data) -> bool:
        return True

    def choose_scalar_style(self):
        style = super().choose_scalar_style()
        return '"' if style == "'" else style


def parse_yaml(content: str | bytes):
    try:
        return yaml.load(content, Loader=_CoreSchemaLoader)
    except yaml.YAMLError as exc:
        raise FormatError(f"YAML parse failed: {exc}") from exc


def stringify_yaml(data) -> str:
    try:
        return yaml.dump(
            data,
            Dumper=_NoAliasDumper,
            indent=2,
            width=float("inf"),
            allow_unicode=True,
            sort_keys=False,
            default_flow_style=False,
        )
    except yaml.YAMLError as exc:
        raise FormatError(f"YAML serialization failed: {exc}") from exc


def extract_proxies(content: str | bytes) -> str:
    """Return a YAML document holding only the ``proxies`` list of a Clash config."""
    document = parse_yaml(content)
    if not isinstance(document, dict):
        raise FormatError("invalid YAML config: expected a mapping")

    proxies = document.get("proxies")
    if not isinstance(proxies, list):
        raise FormatError("no valid proxies list found in config")

    return stringify_yaml({"proxies": proxies})


def validate_yaml(content: str) -> tuple[bool, str]:
    try:
        parse_yaml(content)
    except FormatError as exc:
        return False, str(exc)
    return True, ""


def format_yaml(content: str) -> str:
    document = parse_yaml(content)
    if document is None:
        return ""
    return stringify_yaml(document)
