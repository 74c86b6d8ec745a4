"""Graph visualization tools.

Renders a graph as a Mermaid flowchart. Static edges are solid arrows,
conditional edges and Command destinations are dashed and labelled.

Node ids that are not plain identifiers (or that collide with Mermaid keywords
such as ``end``) are replaced by a hex-encoded Mermaid id; the raw id is kept
in the quoted label.
"""

import html
import re
from typing import List, Optional

from stepgraph.core.graph.base import Graph
from stepgraph.core.graph.state import StateSnapshot
from stepgraph.core.graph.types import END, START

MERMAID_CDN = "https://cdn.jsdelivr.net/npm/mermaid@10.6.0/dist/mermaid.min.js"

_PLAIN_ID = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
_KEYWORDS = {"end", "graph", "subgraph", "flowchart", "class", "classdef", "click", "style", "linkstyle", "direction"}


def mermaid_id(node_id: str) -> str:
    if _PLAIN_ID.match(node_id) and node_id.lower() not in _KEYWORDS:
        return node_id
    return "n_" + node_id.encode("utf-8").hex()


def mermaid_label(text: object) -> str:
    return str(text).replace('"', "#quot;").replace("|", "#124;")


_HTML_TEMPLATE = """<!DOCTYPE html>
<html lang="en">
<head>
    <meta charset="UTF-8">
    <meta name="viewport" content="width=device-width, initial-scale=1.0">
    <title>{title}</title>
    <script src="{cdn}"></script>
    <style>
        body {{ font-family: Arial, sans-serif; max-width: 1200px; margin: 0 auto; padding: 20px; }}
        h1 {{ color: #333; text-align: center; }}
        #mermaid-container {{ text-align: center; margin: 20px 0; }}
    </style>
</head>
<body>
    <h1>{title}</h1>
    <div id="mermaid-container">
        <div class="mermaid">
{diagram}
        </div>
    </div>
    <script>
        mermaid.initialize({{ startOnLoad: true, theme: 'default', securityLevel: 'loose' }});
    </script>
</body>
</html>
"""


class GraphVisualizer:
    """Visualize graph structure and execution."""

    def __init__(self, graph: Graph):
        self.graph = graph

    def _node_lines(self) -> List[str]:
        lines = [f'    {START}(["START"])']
        for node_id in self.graph.nodes:
            lines.append(f'    {mermaid_id(node_id)}["{mermaid_label(node_id)}"]')
        lines.append(f'    {END}(["END"])')
        return lines

    def _edge_lines(self) -> List[str]:
        lines = []
        for source, targets in self.graph.edges.items():
            for target in targets:
                lines.append(f"    {mermaid_id(source)} --> {mermaid_id(target)}")
        for node_id in self.graph.nodes:
            if node_id not in self.graph.edges and self.graph.nodes[node_id].is_terminal:
                lines.append(f"    {mermaid_id(node_id)} --> {END}")

        for source, branches in self.graph.branches.items():
            for branch in branches:
                if branch.path_map:
                    for key, target in branch.path_map.items():
                        lines.append(f"    {mermaid_id(source)} -.->|{mermaid_label(key)}| {mermaid_id(target)}")
                else:
                    for target in branch.destinations or []:
                        lines.append(f"    {mermaid_id(source)} -.-> {mermaid_id(target)}")

        for node_id, node in self.graph.nodes.items():
            for target in node.ends or []:
                lines.append(f"    {mermaid_id(node_id)} -.->|goto| {mermaid_id(target)}")
        return lines

    def render_graph(self) -> str:
        """Mermaid ``graph TD`` text for the graph structure."""
        lines = ["graph TD"]
        lines.extend(self._node_lines())
        lines.extend(self._edge_lines())
        lines.append("    classDef terminus fill:#e8e8e8,stroke:#555,stroke-width:2px")
        lines.append(f"    class {START},{END} terminus")
        return "\n".join(lines)

    def render_execution(self, snapshot: StateSnapshot) -> str:
        """Structure diagram with the snapshot's pending and interrupted nodes highlighted."""
        lines = self.render_graph().split("\n")
        interrupted = [i.node_id for i in snapshot.interrupts]
        pending = [n for n in snapshot.next if n not in interrupted]
        if pending:
            lines.append("    classDef pending fill:#dbeafe,stroke:#2563eb")
            lines.append(f"    class {','.join(map(mermaid_id, pending))} pending")
        if interrupted:
            lines.append("    classDef interrupted fill:#fde68a,stroke:#b45309,stroke-width:2px")
            lines.append(f"    class {','.join(map(mermaid_id, interrupted))} interrupted")
        return "\n".join(lines)

    def render_html(self, title: str = "Graph Visualization", snapshot: Optional[StateSnapshot] = None) -> str:
        """Standalone HTML page that renders the diagram in a browser."""
        diagram = self.render_execution(snapshot) if snapshot is not None else self.render_graph()
        return _HTML_TEMPLATE.format(title=html.escape(title), cdn=MERMAID_CDN, diagram=diagram)
