from __future__ import annotations

from .runtime import HttpMappingRules, MappingRule


class NoRoute(Exception):
    pass


def split_context_path(path: str) -> tuple[str, str]:
    """Split ``/svc1/a/b`` into ``("svc1", "a/b")``."""
    stripped = path.lstrip("/")
    identity, _, rest = stripped.partition("/")
    return identity, rest


def resolve_upstream(path: str, rules: HttpMappingRules) -> tuple[str, MappingRule]:
    """Map a request path onto an upstream URL.

    The first path segment is the context path. When a rule has several
    targets they are used round-robin.

    Returns (upstream_url, rule).
    """
    identity, rest = split_context_path(path)
    if not identity:
        raise NoRoute("No context path in request.")
    rule = rules.get_rule(identity)
    if rule is None or not rule.targets:
        raise NoRoute(f"No route for context path '{identity}'.")

    target = rule.targets[rules.next_index(identity, len(rule.targets))]
    if rest:
        return f"{target.rstrip('/')}/{rest}", rule
    return target, rule
