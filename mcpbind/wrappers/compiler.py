"""
Schema compilers: JSON Schema in, Python type source out.

The generator only depends on ``SchemaCompiler.compile``; the default
``TypedDictCompiler`` emits ``typing.TypedDict`` classes so that a stub's
input is still a plain dict and can be forwarded to the host unchanged.
Optional keys are wrapped in ``NotRequired[...]`` which keeps
``__required_keys__`` / ``__optional_keys__`` in line with the schema's
``required`` list.

Generated source expects these names in scope::

    from typing import Any, Dict, List, Literal, NotRequired, Optional, TypedDict, Union
"""

from __future__ import annotations

import keyword
import re
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Set, Tuple

from mcpbind.errors import SchemaError

TYPING_IMPORTS = "from typing import Any, Dict, List, Literal, NotRequired, Optional, TypedDict, Union"

_SCALARS = {
    "string": "str",
    "integer": "int",
    "number": "float",
    "boolean": "bool",
    "null": "None",
}

_LITERAL_TYPES = (str, int, bool, type(None))


def to_identifier(name: str) -> str:
    """Turn an arbitrary tool or field name into a valid Python identifier."""
    ident = re.sub(r"\W", "_", name)
    if not ident:
        return "_"
    if ident[0].isdigit():
        ident = f"_{ident}"
    if keyword.iskeyword(ident):
        ident = f"{ident}_"
    return ident


def to_pascal_case(name: str) -> str:
    """``create_issue`` -> ``CreateIssue``; ``getUser`` -> ``GetUser``."""
    words = [w for w in re.split(r"[^0-9A-Za-z]+", name) if w]
    pascal = "".join(w[0].upper() + w[1:] for w in words)
    if not pascal:
        return "Tool"
    if pascal[0].isdigit():
        pascal = f"T{pascal}"
    return pascal


def _comment(text: Optional[str]) -> Optional[str]:
    if not text:
        return None
    line = " ".join(str(text).split())
    return line[:100] if line else None


def _docstring(text: Optional[str], indent: str) -> Optional[str]:
    line = _comment(text)
    if not line:
        return None
    line = line.replace("\\", "\\\\").replace('"""', '\\"\\"\\"')
    if line.endswith('"'):
        line += " "
    return f'{indent}"""{line}"""'


class SchemaCompiler(ABC):
    """Turns one JSON Schema into Python source defining ``type_name``."""

    @abstractmethod
    def compile(self, schema: Dict[str, Any], type_name: str) -> str:
        """Return source text that binds ``type_name`` at module level."""


class TypedDictCompiler(SchemaCompiler):
    """Default compiler: objects become ``TypedDict``, everything else an alias."""

    def compile(self, schema: Dict[str, Any], type_name: str) -> str:
        if not isinstance(schema, dict):
            raise SchemaError("schema must be a JSON object", type_name)
        if not type_name.isidentifier() or keyword.iskeyword(type_name):
            raise SchemaError("type name is not a valid identifier", type_name)
        return _Compilation(schema, type_name).run()


class _Compilation:
    """State for compiling one root schema (nested names, $ref cache)."""

    def __init__(self, root: Dict[str, Any], type_name: str):
        self.root = root
        self.type_name = type_name
        self.blocks: List[str] = []
        self.names: Set[str] = set()
        self.refs: Dict[str, str] = {}
        self.pending: Set[str] = set()

    def run(self) -> str:
        self.names.add(self.type_name)
        self.pending.add(self.type_name)
        annotation = self.annotation(self.root, self.type_name, top=True, claimed=True)
        self.pending.discard(self.type_name)
        if annotation != self.type_name:
            self.blocks.append(f"{self.type_name} = {annotation}")
        return "\n\n\n".join(self.blocks) + "\n"

    # ── Names ─────────────────────────────────────────────────────────────

    def claim(self, hint: str) -> str:
        name = hint
        n = 2
        while name in self.names:
            name = f"{hint}{n}"
            n += 1
        self.names.add(name)
        return name

    # ── Schema -> annotation ──────────────────────────────────────────────

    def annotation(self, schema: Any, hint: str, top: bool = False, claimed: bool = False) -> str:
        if schema is True or schema is False or schema == {}:
            return "Any"
        if not isinstance(schema, dict):
            raise SchemaError(f"expected a schema object, got {type(schema).__name__}", self.type_name)

        if "$ref" in schema:
            return self.ref(schema["$ref"])
        if "const" in schema:
            return self.literal([schema["const"]])
        if "enum" in schema:
            return self.literal(schema["enum"])
        for key in ("anyOf", "oneOf"):
            if key in schema:
                options = schema[key]
                if not isinstance(options, list):
                    raise SchemaError(f"'{key}' must be a list", self.type_name)
                return self.union(
                    [self.annotation(opt, f"{hint}Option{i}") for i, opt in enumerate(options, 1)]
                )
        if "allOf" in schema:
            return self.annotation(self.merge_all_of(schema), hint, top, claimed)

        kind = schema.get("type")
        if isinstance(kind, list):
            rest = {k: v for k, v in schema.items() if k != "type"}
            if claimed and "object" in kind:
                # the claimed name must end up bound to the object itself
                return self.annotation({**rest, "type": "object"}, hint, top, claimed)
            return self.union([self.annotation({**rest, "type": k}, hint, top, claimed) for k in kind])
        if kind is None:
            if "properties" in schema:
                kind = "object"
            elif "items" in schema:
                kind = "array"
            else:
                return "Any"

        if kind == "object":
            return self.object(schema, hint, top, claimed)
        if kind == "array":
            items = schema.get("items")
            if isinstance(items, dict):
                return f"List[{self.annotation(items, f'{hint}Item')}]"
            return "List[Any]"
        if kind in _SCALARS:
            return _SCALARS[kind]
        raise SchemaError(f"unsupported type {kind!r}", self.type_name)

    def literal(self, values: List[Any]) -> str:
        if not isinstance(values, list) or not values:
            return "Any"
        if not all(isinstance(v, _LITERAL_TYPES) for v in values):
            return "Any"
        return f"Literal[{', '.join(repr(v) for v in values)}]"

    def union(self, parts: List[str]) -> str:
        unique: List[str] = []
        for part in parts:
            if part not in unique:
                unique.append(part)
        if "Any" in unique:
            return "Any"
        nullable = "None" in unique
        others = [p for p in unique if p != "None"]
        if not others:
            return "None"
        if len(others) == 1:
            return f"Optional[{others[0]}]" if nullable else others[0]
        if nullable:
            others.append("None")
        return f"Union[{', '.join(others)}]"

    def merge_all_of(self, schema: Dict[str, Any]) -> Dict[str, Any]:
        parts = schema["allOf"]
        if not isinstance(parts, list):
            raise SchemaError("'allOf' must be a list", self.type_name)
        resolved = [self.resolve(p["$ref"]) if isinstance(p, dict) and "$ref" in p else p for p in parts]
        if len(resolved) == 1:
            return resolved[0]
        if not all(isinstance(p, dict) and (p.get("type") == "object" or "properties" in p) for p in resolved):
            return {}
        merged: Dict[str, Any] = {"type": "object", "properties": {}, "required": []}
        for part in resolved:
            merged["properties"].update(part.get("properties") or {})
            merged["required"].extend(r for r in part.get("required") or [] if r not in merged["required"])
        if schema.get("description"):
            merged["description"] = schema["description"]
        return merged

    # ── $ref ──────────────────────────────────────────────────────────────

    def resolve(self, ref: str) -> Dict[str, Any]:
        if not isinstance(ref, str) or not ref.startswith("#"):
            raise SchemaError(f"only local $ref is supported: {ref!r}", self.type_name)
        node: Any = self.root
        for token in [t for t in ref[1:].split("/") if t]:
            token = token.replace("~1", "/").replace("~0", "~")
            if not isinstance(node, dict) or token not in node:
                raise SchemaError(f"unresolvable $ref {ref!r}", self.type_name)
            node = node[token]
        if not isinstance(node, dict):
            raise SchemaError(f"$ref {ref!r} does not point at a schema", self.type_name)
        return node

    def ref(self, ref: str) -> str:
        if ref == "#":
            return f'"{self.type_name}"' if self.type_name in self.pending else self.type_name
        if ref in self.refs:
            name = self.refs[ref]
            return f'"{name}"' if name in self.pending else name

        target = self.resolve(ref)
        name = self.claim(self.type_name + to_pascal_case(ref.rsplit("/", 1)[-1]))
        self.refs[ref] = name
        self.pending.add(name)
        annotation = self.annotation(target, name, claimed=True)
        if annotation != name:
            self.blocks.append(f"{name} = {annotation}")
        self.pending.discard(name)
        return name

    # ── Objects ───────────────────────────────────────────────────────────

    def object(self, schema: Dict[str, Any], hint: str, top: bool, claimed: bool) -> str:
        props = schema.get("properties")
        if props is None:
            extra = schema.get("additionalProperties")
            if isinstance(extra, dict) and extra:
                return f"Dict[str, {self.annotation(extra, f'{hint}Value')}]"
            if not top:
                return "Dict[str, Any]"
            props = {}
        if not isinstance(props, dict):
            raise SchemaError("'properties' must be an object", self.type_name)

        name = hint if claimed else self.claim(hint)
        required = schema.get("required") or []
        if not isinstance(required, list):
            raise SchemaError("'required' must be a list", self.type_name)

        fields: List[Tuple[str, str, Optional[str]]] = []
        for prop_name, prop_schema in props.items():
            annotation = self.annotation(prop_schema, f"{name}{to_pascal_case(prop_name)}")
            if prop_name not in required:
                annotation = f"NotRequired[{annotation}]"
            description = prop_schema.get("description") if isinstance(prop_schema, dict) else None
            fields.append((prop_name, annotation, description))
        for prop_name in required:
            if prop_name not in props:
                fields.append((prop_name, "Any", None))

        self.blocks.append(self.render_typed_dict(name, fields, schema.get("description") or schema.get("title")))
        return name

    @staticmethod
    def render_typed_dict(name: str, fields: List[Tuple[str, str, Optional[str]]], description: Optional[str]) -> str:
        class_syntax = all(f.isidentifier() and not keyword.iskeyword(f) for f, _, _ in fields)
        if class_syntax:
            lines = [f"class {name}(TypedDict):"]
            doc = _docstring(description, "    ")
            if doc:
                lines.append(doc)
            for field_name, annotation, field_doc in fields:
                comment = _comment(field_doc)
                if comment:
                    lines.append(f"    # {comment}")
                lines.append(f"    {field_name}: {annotation}")
            if len(lines) == 1:
                lines.append("    pass")
            return "\n".join(lines)

        lines = [f"{name} = TypedDict(", f"    {name!r},", "    {"]
        for field_name, annotation, field_doc in fields:
            comment = _comment(field_doc)
            if comment:
                lines.append(f"        # {comment}")
            lines.append(f"        {field_name!r}: {annotation},")
        lines.extend(["    },", ")"])
        return "\n".join(lines)
