"""
JSON materialization report generator.
"""
import json
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from infragraph import __version__
from infragraph.graph import ResourceGraph
from infragraph.models.outputs import mask_paths
from infragraph.models.resource import ResourceState


def _count_by_state(graph: ResourceGraph) -> dict:
    counts = {s.value: 0 for s in ResourceState}
    for r in graph:
        counts[r.state.value] += 1
    return counts


def build_report(graph: ResourceGraph, exports: Optional[Dict[str, Any]], source_path: str) -> str:
    report = {
        "meta": {
            "generated": datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ"),
            "source": source_path,
            "tool": "infragraph",
            "version": __version__,
        },
        "summary": _count_by_state(graph),
        "resources": [
            {
                "kind": r.kind,
                "name": r.name,
                "state": r.state.value,
                "lookup": r.lookup,
                "dependencies": [d.qualified_name for d in r.dependencies],
                "attempts": r.attempts,
                "outputs": mask_paths(r.outputs, r.secret_outputs),
                "error": r.error,
            }
            for r in (graph.get(h) for h in graph.topological_order())
        ],
        "exports": exports or {},
    }
    return json.dumps(report, indent=2, default=str)
