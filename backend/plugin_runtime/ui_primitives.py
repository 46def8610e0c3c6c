"""
UI primitives — the closed component registry render artifacts build trees from.

Plugin code calls `ui.Card({"title": "Hi"}, ui.Text({}, "body"))` inside the
sandbox; what comes back is plain data: `{"type", "props", "children"}` nodes
that the admin console maps onto its own component library. The host
validates every returned tree against the registry before it leaves the
runtime.
"""

from plugin_runtime.errors import PluginExecutionError

UI_COMPONENTS = frozenset({
    # Layout
    "Box", "Stack", "Grid", "Fragment", "Separator",
    # Surfaces
    "Card", "CardHeader", "CardTitle", "CardDescription", "CardContent", "CardFooter",
    "Alert", "Tabs", "Tab",
    # Text
    "Heading", "Text", "Badge", "Link", "Icon", "Image",
    # Forms
    "Button", "Input", "Textarea", "Select", "Option", "Checkbox", "Switch", "Label", "Form",
    # Data
    "Table", "TableHeader", "TableBody", "TableRow", "TableHead", "TableCell",
    "List", "ListItem", "Progress", "Stat",
})

MAX_TREE_DEPTH = 64
MAX_TREE_NODES = 5000

_SCALARS = (str, int, float, bool)


class InvalidRenderTree(PluginExecutionError):
    def __init__(self, message: str):
        super().__init__(message, error_type="InvalidRenderTree")


class UiRegistry:
    """Host-side handle for the `ui` capability (serialized as its component names)."""

    def __init__(self, components=UI_COMPONENTS):
        self.components = frozenset(components)

    def validate_tree(self, tree):
        """Check a render result and return it. Raises InvalidRenderTree."""
        count = [0]
        self._check(tree, 0, count)
        return tree

    def _check(self, node, depth: int, count: list):
        if node is None or isinstance(node, _SCALARS):
            return
        if depth > MAX_TREE_DEPTH:
            raise InvalidRenderTree(f"Render tree deeper than {MAX_TREE_DEPTH} levels")
        if isinstance(node, list):
            for child in node:
                self._check(child, depth + 1, count)
            return
        if not isinstance(node, dict):
            raise InvalidRenderTree(f"Unsupported node of type {type(node).__name__}")
        count[0] += 1
        if count[0] > MAX_TREE_NODES:
            raise InvalidRenderTree(f"Render tree larger than {MAX_TREE_NODES} nodes")
        node_type = node.get("type")
        if node_type not in self.components:
            raise InvalidRenderTree(f"Unknown UI component: {node_type!r}")
        props = node.get("props", {})
        if not isinstance(props, dict):
            raise InvalidRenderTree(f"{node_type}.props must be an object")
        children = node.get("children", [])
        if not isinstance(children, list):
            raise InvalidRenderTree(f"{node_type}.children must be a list")
        for child in children:
            self._check(child, depth + 1, count)


UI_REGISTRY = UiRegistry()
