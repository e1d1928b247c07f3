"""
Markdown + Mermaid materialization report generator.
"""
import re
from collections import defaultdict
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from jinja2 import Environment

from infragraph import __version__
from infragraph.graph import ResourceGraph
from infragraph.models.resource import Resource, ResourceState

_STATE_ICON = {
    "ready": "🟢",
    "materializing": "🔵",
    "pending": "⚪",
    "failed": "🔴",
}

_STATE_ASCII = {
    "ready": "[READY]",
    "materializing": "[RUNNING]",
    "pending": "[PENDING]",
    "failed": "[FAILED]",
}

_BACKEND_SUBGRAPH = {
    "gcp": "Cloud",
    "k8s": "Cluster",
    "random": "Generated",
}

_STATE_STYLE = {
    "ready": "fill:#88cc00,color:#000",
    "failed": "fill:#ff4444,color:#fff",
    "materializing": "fill:#4488ff,color:#fff",
}


def _sanitize_node_id(name: str) -> str:
    return re.sub(r"[^a-zA-Z0-9_]", "_", name)


def _node_shape(r: Resource) -> str:
    label = f"{r.handle.type_name.split('.')[-1]}: {r.name}"
    if r.lookup:
        return f"[/{label}/]"
    if r.handle.type_name == "yaml.ConfigFile":
        return f"[[{label}]]"
    if r.handle.type_name.endswith("Namespace"):
        return f"{{{{{label}}}}}"
    return f"[{label}]"


def build_mermaid(graph: ResourceGraph) -> str:
    subgraphs: Dict[str, List[Resource]] = defaultdict(list)
    for r in graph:
        subgraphs[_BACKEND_SUBGRAPH.get(r.handle.backend, "Other")].append(r)

    lines = ["flowchart LR"]
    for sg_name in ["Generated", "Cloud", "Cluster", "Other"]:
        sg_resources = subgraphs.get(sg_name, [])
        if not sg_resources:
            continue
        lines.append(f"    subgraph {sg_name}")
        for r in sg_resources:
            lines.append(f"        {_sanitize_node_id(r.qualified_name)}{_node_shape(r)}")
        lines.append("    end")

    # Edges point from a dependency to the resource waiting on it.
    for r in graph:
        dst = _sanitize_node_id(r.qualified_name)
        for dep in r.dependencies:
            lines.append(f"    {_sanitize_node_id(dep.qualified_name)} --> {dst}")

    for r in graph:
        style = _STATE_STYLE.get(r.state.value)
        if style:
            lines.append(f"    style {_sanitize_node_id(r.qualified_name)} {style}")

    return "\n".join(lines)


def _count_by_state(graph: ResourceGraph) -> Dict[str, int]:
    counts = {s.value: 0 for s in ResourceState}
    for r in graph:
        counts[r.state.value] += 1
    return counts


_TEMPLATE = """\
# Materialization Report

**Generated:** {{ generated }}
**Source:** {{ source }}
**Tool:** infragraph v{{ version }}

---

## Summary

**{{ resource_count }} resources** declared:
{% for state in ["ready", "failed", "materializing", "pending"] %}
- **{{ state }}**: {{ counts[state] }}{% endfor %}

{% if counts["failed"] > 0 %}
Materialization failed. Resources created before the failure were {{ "torn down" if torn_down else "left in place" }}.
{% elif counts["ready"] == resource_count %}
Every resource is ready.
{% else %}
Nothing has been materialized yet; resources are listed in materialization order.
{% endif %}

---

## Resources

| # | State | Kind | Name | Depends on |
|---|-------|------|------|------------|
{% for r in resources %}| {{ loop.index }} | {{ icons[r.state.value] }} | `{{ r.kind }}` | `{{ r.name }}` | {{ r.dependencies | map(attribute="name") | join(", ") }} |
{% endfor %}
{% if failures %}
---

## Failures

{% for r in failures %}
### {{ r.qualified_name }}

{{ r.error }}
{% endfor %}
{% endif %}
{% if exports %}
---

## Outputs

| Name | Value |
|------|-------|
{% for name, value in exports.items() %}| `{{ name }}` | {{ value }} |
{% endfor %}
{% endif %}
---

## Dependency Graph

```mermaid
{{ mermaid }}
```
"""


def _flatten(value: Any) -> str:
    text = str(value)
    if "\n" in text:
        return f"_{len(text.splitlines())} lines_"
    return f"`{text}`"


def build_report(
    graph: ResourceGraph,
    exports: Optional[Dict[str, Any]],
    source_path: str,
    ascii_mode: bool = False,
    torn_down: bool = False,
) -> str:
    counts = _count_by_state(graph)
    order = graph.topological_order()
    resources = [graph.get(h) for h in order]

    env = Environment(autoescape=False)
    template = env.from_string(_TEMPLATE)

    return template.render(
        generated=datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M UTC"),
        source=source_path,
        version=__version__,
        resource_count=len(resources),
        counts=counts,
        resources=resources,
        failures=[r for r in resources if r.state == ResourceState.FAILED],
        exports={k: _flatten(v) for k, v in (exports or {}).items()},
        icons=_STATE_ASCII if ascii_mode else _STATE_ICON,
        torn_down=torn_down,
        mermaid=build_mermaid(graph),
    )
