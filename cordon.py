#!/usr/bin/env python3
"""
Cordon - Engine boundary enforcement for Ruby

High-level goals:
- Parse Ruby (via tree-sitter) into a small node IR shaped like the parser gem AST
- Load per-rule configuration from YAML
- Evaluate the engine boundary rules against each file + project-wide context
  (engine API files, test factory definitions, global models)
- Emit structured JSON for CI / editors

Two rules ship here:
- EngineApiBoundary: code outside an engine may only reach it through its API
- GlobalModelAccessFromEngine: engine code may not reach into global models

Both are purely syntactic. Metaprogrammed or otherwise indirect access is not
detected.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from typing import List, Dict, Optional, Tuple, Any, Iterator, Set
import argparse
import glob
import hashlib
import json
import os
import re
import sys

import inflection
import tree_sitter_ruby
import yaml
from tree_sitter import Language, Parser

__version__ = "0.1.0"


# ============================================================
# ===================== SOURCE LOCATION ======================
# ============================================================

@dataclass
class SourceRange:
    file: str
    line_start: int
    col_start: int
    line_end: int
    col_end: int


_WARNED: Set[str] = set()


def _warn_once(key: str, message: str) -> None:
    if key in _WARNED:
        return
    sys.stderr.write(f"[cordon] {message}\n")
    _WARNED.add(key)


def _with_trailing_slash(path: str) -> str:
    return path if path.endswith("/") else path + "/"


def _posix(path: str) -> str:
    return path.replace(os.sep, "/")


def _relative_posix(path: str, root: str) -> str:
    return _posix(os.path.relpath(path, root))


# ============================================================
# ======================= SYNTAX TREE ========================
# ============================================================

@dataclass(eq=False)
class Node:
    """
    One node of the Ruby syntax IR.

    `kind` uses the parser gem vocabulary ("const", "send", "block", "module",
    "class", "casgn", "array", "hash", "pair", "str", "sym", "begin", ...).
    `children` mixes nested nodes with plain values in the positions the
    parser gem uses:

        const   [namespace | cbase | None, "Name"]
        send    [receiver | None, "method", *args]
        block   [send, params | None, body | None]
        module  [name, body | None]
        class   [name, superclass | None, body | None]
        casgn   [namespace | None, "NAME", value]
        str/sym ["value"]

    Nodes compare by identity so they can be used as dict keys.
    """
    kind: str
    children: List[Any] = field(default_factory=list)
    source: str = ""
    source_range: Optional[SourceRange] = None
    parent: Optional["Node"] = field(default=None, repr=False)

    @property
    def child_nodes(self) -> List["Node"]:
        return [child for child in self.children if isinstance(child, Node)]

    @property
    def value(self) -> Any:
        """Literal payload of str/sym nodes."""
        if self.kind in ("str", "sym") and self.children:
            return self.children[0]
        return None


@dataclass
class SourceFile:
    path: str
    source: str
    root: Node


def walk(node: Node) -> Iterator[Node]:
    """Pre-order traversal of `node` and all of its descendants."""
    stack = [node]
    while stack:
        current = stack.pop()
        yield current
        stack.extend(reversed(current.child_nodes))


def strip_leading_colons(text: str) -> str:
    return re.sub(r"^:*", "", text)


def const_name(node: Optional[Node]) -> Optional[str]:
    """
    Fully-qualified name of a const node, without any leading `::`.
    `::Foo::Bar` -> "Foo::Bar". Returns None for non-const nodes.
    """
    if node is None or node.kind != "const":
        return None
    namespace, name = node.children[0], node.children[1]
    if isinstance(namespace, Node) and namespace.kind == "const":
        namespace_name = const_name(namespace)
        if namespace_name:
            return f"{namespace_name}::{name}"
    return str(name)


def send_method(node: Node) -> Optional[str]:
    if node.kind != "send":
        return None
    return node.children[1]


def send_arguments(node: Node) -> List[Node]:
    if node.kind != "send":
        return []
    return [child for child in node.children[2:] if isinstance(child, Node)]


_RUBY_LANGUAGE = Language(tree_sitter_ruby.language())

# tree-sitter containers that hold a plain statement sequence.
_SEQUENCE_TYPES = {"program", "body_statement", "block_body", "parenthesized_statements"}

# `%i[]` and `%w[]` literals are plain arrays in the IR.
_ARRAY_TYPES = {"array", "symbol_array", "string_array"}


class _RubyTreeTranslator:
    """
    Converts a tree-sitter-ruby concrete tree into the Node IR.
    Unknown node types are kept under their tree-sitter type name with their
    named children translated, so every constant reference stays reachable.
    """

    _HANDLERS = {
        "constant": "_constant",
        "scope_resolution": "_scope_resolution",
        "call": "_call",
        "module": "_module",
        "class": "_class",
        "assignment": "_assignment",
        "hash": "_hash",
        "pair": "_pair",
        "string": "_string",
        "simple_symbol": "_simple_symbol",
        "hash_key_symbol": "_hash_key_symbol",
        "delimited_symbol": "_delimited_symbol",
        "bare_symbol": "_bare_symbol",
        "bare_string": "_bare_string",
        "identifier": "_identifier",
    }

    def __init__(self, data: bytes, path: str) -> None:
        self._data = data
        self._path = path

    def translate(self, ts_node: Any) -> Optional[Node]:
        if ts_node is None or ts_node.type == "comment":
            return None
        if ts_node.type in _SEQUENCE_TYPES:
            return self._make("begin", ts_node, self._translate_all(ts_node.named_children))
        if ts_node.type in _ARRAY_TYPES:
            return self._make("array", ts_node, self._translate_all(ts_node.named_children))
        handler = self._HANDLERS.get(ts_node.type)
        if handler is not None:
            return getattr(self, handler)(ts_node)
        return self._make(ts_node.type, ts_node, self._translate_all(ts_node.named_children))

    def translate_program(self, ts_node: Any) -> Node:
        return self._make("begin", ts_node, self._translate_all(ts_node.named_children))

    def _translate_all(self, ts_nodes: List[Any]) -> List[Node]:
        translated: List[Node] = []
        for ts_node in ts_nodes:
            node = self.translate(ts_node)
            if node is not None:
                translated.append(node)
        return translated

    # ---- node construction -------------------------------------------------

    def _text(self, ts_node: Any) -> str:
        return self._data[ts_node.start_byte:ts_node.end_byte].decode("utf-8", errors="replace")

    def _make(self, kind: str, ts_node: Any, children: List[Any]) -> Node:
        return self._make_between(kind, ts_node, ts_node, children)

    def _make_between(self, kind: str, first: Any, last: Any, children: List[Any]) -> Node:
        start_row, start_col = first.start_point
        end_row, end_col = last.end_point
        node = Node(
            kind=kind,
            children=children,
            source=self._data[first.start_byte:last.end_byte].decode("utf-8", errors="replace"),
            source_range=SourceRange(
                file=self._path,
                line_start=start_row + 1,
                col_start=start_col + 1,
                line_end=end_row + 1,
                col_end=end_col + 1,
            ),
        )
        for child in node.child_nodes:
            child.parent = node
        return node

    def _body(self, ts_nodes: List[Any]) -> Optional[Node]:
        statements: List[Node] = []
        for ts_node in ts_nodes:
            if ts_node.type in _SEQUENCE_TYPES:
                statements.extend(self._translate_all(ts_node.named_children))
            else:
                translated = self.translate(ts_node)
                if translated is not None:
                    statements.append(translated)
        if not statements:
            return None
        return self._make_between("begin", ts_nodes[0], ts_nodes[-1], statements)

    # ---- handlers ----------------------------------------------------------

    def _constant(self, ts_node: Any) -> Node:
        return self._make("const", ts_node, [None, self._text(ts_node)])

    def _scope_resolution(self, ts_node: Any) -> Node:
        scope = ts_node.child_by_field_name("scope")
        name = ts_node.child_by_field_name("name")
        name_text = self._text(name) if name is not None else ""
        if name is not None and name.type != "constant":
            # `Foo::bar` is a method call spelled with `::`.
            return self._make("send", ts_node, [self.translate(scope), name_text])
        if scope is None:
            row, col = ts_node.start_point
            cbase = Node(
                kind="cbase",
                source="::",
                source_range=SourceRange(self._path, row + 1, col + 1, row + 1, col + 3),
            )
            return self._make("const", ts_node, [cbase, name_text])
        return self._make("const", ts_node, [self.translate(scope), name_text])

    def _call(self, ts_node: Any) -> Node:
        receiver = self.translate(ts_node.child_by_field_name("receiver"))
        method = ts_node.child_by_field_name("method")
        method_name = self._text(method) if method is not None else "call"
        arguments = ts_node.child_by_field_name("arguments")
        args = self._arguments(arguments) if arguments is not None else []

        block = ts_node.child_by_field_name("block")
        if block is None:
            block = next(
                (child for child in ts_node.named_children if child.type in ("block", "do_block")),
                None,
            )
        if block is None:
            return self._make("send", ts_node, [receiver, method_name] + args)

        head = [child for child in ts_node.children if child.start_byte < block.start_byte]
        send = self._make_between("send", ts_node, head[-1] if head else ts_node, [receiver, method_name] + args)
        params_ts = block.child_by_field_name("parameters")
        body_ts = block.child_by_field_name("body")
        if body_ts is not None:
            body = self._body([body_ts])
        else:
            body = self._body(
                [child for child in block.named_children if child.type not in ("block_parameters", "comment")]
            )
        return self._make("block", ts_node, [send, self.translate(params_ts), body])

    def _arguments(self, ts_node: Any) -> List[Node]:
        # Trailing keyword arguments collapse into one hash, as in the parser gem.
        args: List[Node] = []
        pairs: List[Any] = []
        for child in ts_node.named_children:
            if child.type == "comment":
                continue
            if child.type == "pair":
                pairs.append(child)
                continue
            if pairs:
                args.append(self._hash_from_pairs(pairs))
                pairs = []
            translated = self.translate(child)
            if translated is not None:
                args.append(translated)
        if pairs:
            args.append(self._hash_from_pairs(pairs))
        return args

    def _hash_from_pairs(self, pairs: List[Any]) -> Node:
        return self._make_between("hash", pairs[0], pairs[-1], self._translate_all(pairs))

    def _module(self, ts_node: Any) -> Node:
        name = ts_node.child_by_field_name("name")
        body_ts = ts_node.child_by_field_name("body")
        if body_ts is not None:
            body = self._body([body_ts])
        else:
            body = self._body([c for c in ts_node.named_children[1:] if c.type != "comment"])
        return self._make("module", ts_node, [self.translate(name), body])

    def _class(self, ts_node: Any) -> Node:
        name = ts_node.child_by_field_name("name")
        superclass_ts = ts_node.child_by_field_name("superclass")
        superclass = None
        if superclass_ts is not None and superclass_ts.named_children:
            superclass = self.translate(superclass_ts.named_children[-1])
        body_ts = ts_node.child_by_field_name("body")
        if body_ts is not None:
            body = self._body([body_ts])
        else:
            body = self._body(
                [c for c in ts_node.named_children[1:] if c.type not in ("superclass", "comment")]
            )
        return self._make("class", ts_node, [self.translate(name), superclass, body])

    def _assignment(self, ts_node: Any) -> Node:
        left = ts_node.child_by_field_name("left")
        right = self.translate(ts_node.child_by_field_name("right"))
        if left is not None and left.type == "constant":
            return self._make("casgn", ts_node, [None, self._text(left), right])
        if left is not None and left.type == "scope_resolution":
            name = left.child_by_field_name("name")
            if name is not None and name.type == "constant":
                scope = self.translate(left.child_by_field_name("scope"))
                return self._make("casgn", ts_node, [scope, self._text(name), right])
        if left is not None and left.type == "identifier":
            return self._make("lvasgn", ts_node, [self._text(left), right])
        if left is not None and left.type == "instance_variable":
            return self._make("ivasgn", ts_node, [self._text(left), right])
        return self._make("asgn", ts_node, [self.translate(left), right])

    def _hash(self, ts_node: Any) -> Node:
        return self._make("hash", ts_node, self._translate_all(ts_node.named_children))

    def _pair(self, ts_node: Any) -> Node:
        key = self.translate(ts_node.child_by_field_name("key"))
        value = self.translate(ts_node.child_by_field_name("value"))
        return self._make("pair", ts_node, [key, value])

    def _string(self, ts_node: Any) -> Node:
        parts = ts_node.named_children
        if any(part.type == "interpolation" for part in parts):
            return self._make("dstr", ts_node, self._translate_all(parts))
        value = "".join(
            self._text(part) for part in parts if part.type in ("string_content", "escape_sequence")
        )
        return self._make("str", ts_node, [value])

    def _simple_symbol(self, ts_node: Any) -> Node:
        return self._make("sym", ts_node, [self._text(ts_node).lstrip(":")])

    def _hash_key_symbol(self, ts_node: Any) -> Node:
        return self._make("sym", ts_node, [self._text(ts_node).strip(":")])

    def _delimited_symbol(self, ts_node: Any) -> Node:
        parts = ts_node.named_children
        if any(part.type == "interpolation" for part in parts):
            return self._make("dsym", ts_node, self._translate_all(parts))
        value = "".join(self._text(part) for part in parts if part.type == "string_content")
        return self._make("sym", ts_node, [value])

    def _bare_symbol(self, ts_node: Any) -> Node:
        return self._make("sym", ts_node, [self._text(ts_node)])

    def _bare_string(self, ts_node: Any) -> Node:
        return self._make("str", ts_node, [self._text(ts_node)])

    def _identifier(self, ts_node: Any) -> Node:
        return self._make("ident", ts_node, [self._text(ts_node)])


def parse_ruby_source(source: str, path: str = "<source>") -> SourceFile:
    """
    Parse Ruby source text into the Node IR. Syntax errors do not raise:
    tree-sitter recovers and the unparsable region shows up as ERROR nodes.
    """
    data = source.encode("utf-8")
    tree = Parser(_RUBY_LANGUAGE).parse(data)
    if tree.root_node.has_error:
        sys.stderr.write(f"[cordon] Syntax errors in {path}; results may be incomplete.\n")
    translator = _RubyTreeTranslator(data, path)
    # Badly broken input can recover as a top-level ERROR node instead of a program.
    root = translator.translate_program(tree.root_node)
    return SourceFile(path=path, source=source, root=root)


def parse_ruby_file(path: str, display_path: Optional[str] = None) -> Optional[SourceFile]:
    """Read and parse a Ruby file. Unreadable files are reported and yield None."""
    try:
        with open(path, "r", encoding="utf-8") as handle:
            source = handle.read()
    except FileNotFoundError:
        sys.stderr.write(f"[cordon] Input file not found: {path}\n")
        return None
    except (OSError, UnicodeDecodeError) as exc:
        sys.stderr.write(f"[cordon] Could not read {path}: {exc}\n")
        return None
    return parse_ruby_source(source, display_path or path)


# ============================================================
# ======================== INFLECTION ========================
# ============================================================
#
# Rails naming conventions, on top of the `inflection` package
# (a port of ActiveSupport::Inflector):
#
#   camelize("my_engine")              -> "MyEngine"
#   camelize("foo/bar_baz")            -> "Foo::BarBaz"
#   camelize("MyEngine")               -> "MyEngine"
#   underscore("FakeDisabledEngine")   -> "fake_disabled_engine"
#   underscore("Acme::MyEngine")       -> "acme/my_engine"
#   classify("nested/global_models")   -> "Nested::GlobalModel"
#   classify("status")                 -> "Status"
#   factory_class_name("flexport_cfs") -> "FlexportCfs"
#   factory_class_name("warehouse")    -> "Warehouse"

def camelize(term: str) -> str:
    return "::".join(inflection.camelize(part) for part in term.split("/"))


def underscore(term: str) -> str:
    return "/".join(inflection.underscore(part) for part in term.split("::"))


def classify(term: str) -> str:
    """Path-like name to class name; only the last segment is singularized."""
    segments = term.strip("/").split("/")
    segments[-1] = inflection.singularize(segments[-1])
    return "::".join(inflection.camelize(segment) for segment in segments)


def factory_class_name(factory_name: str) -> str:
    """
    Class a factory builds when nothing else says so. Factories name their
    class by camelizing only, so plural-looking names keep their plural.
    """
    return camelize(factory_name)


# ============================================================
# =================== NODE CONTEXT HELPERS ===================
# ============================================================

# Bound on the const-ancestor walk used for allowlist and override matching.
MAX_ANCESTOR_DEPTH = 5
# Bound on the const-ancestor walk that looks for an enclosing module/class.
MAX_DECLARATION_DEPTH = 10


def in_module_or_class_declaration(node: Node) -> bool:
    """
    True when `node` is part of the name (or superclass) of a module/class
    declaration, e.g. `GenericName` in `module Mutations::GenericName`.
    """
    depth = 0
    while node.kind == "const" and node.parent is not None and depth < MAX_DECLARATION_DEPTH:
        node = node.parent
        depth += 1
    return node.kind in ("module", "class")


def sending_method_to_namespace_itself(node: Node) -> bool:
    """
    True for `Warehouse.new` style usage: value objects can share a name
    with an engine, and calling a method on the bare name is not a reach
    into the engine.
    """
    return node.parent is not None and node.parent.kind == "send"


def child_of_const(node: Node) -> bool:
    return node.parent is not None and node.parent.kind == "const"


def through_api(node: Node) -> bool:
    """True when the reference continues as `<node>::Api`."""
    parent = node.parent
    return parent is not None and parent.kind == "const" and parent.children[1] == "Api"


def const_ancestor_names(node: Node, max_depth: int = MAX_ANCESTOR_DEPTH) -> List[str]:
    """
    Source of `node` and its enclosing const nodes, innermost first, with
    leading `::` removed:
        MyEngine -> ["MyEngine", "MyEngine::Foo", "MyEngine::Foo::BAR"]
    """
    names: List[str] = []
    current: Optional[Node] = node
    depth = 0
    while current is not None and current.kind == "const" and depth < max_depth:
        names.append(strip_leading_colons(current.source))
        current = current.parent
        depth += 1
    return names


def name_prefixes(name: str, root: Optional[str] = None, max_depth: int = MAX_ANCESTOR_DEPTH) -> List[str]:
    """
    The `const_ancestor_names` walk for a class name held in a string. With
    `root` the walk starts at that prefix, as it starts at the engine const:
        name_prefixes("MyEngine::Foo::BAR", "MyEngine")
            -> ["MyEngine", "MyEngine::Foo", "MyEngine::Foo::BAR"]
    """
    name = strip_leading_colons(name)
    segments = name.split("::")
    first = 1
    if root and (name == root or name.startswith(root + "::")):
        first = len(root.split("::"))
    return ["::".join(segments[:end]) for end in range(first, len(segments) + 1)][:max_depth]


# ============================================================
# ====================== NODE PATTERNS =======================
# ============================================================

ASSOCIATION_METHODS = ("belongs_to", "has_one", "has_many")

FACTORY_BOT_METHODS = (
    "attributes_for",
    "attributes_for_list",
    "build",
    "build_list",
    "build_pair",
    "build_stubbed",
    "build_stubbed_list",
    "create",
    "create_list",
    "create_pair",
)

SPEC_FILE_PATTERN = re.compile(r"_spec\.rb$")


def is_spec_file(path: Optional[str]) -> bool:
    return bool(path) and SPEC_FILE_PATTERN.search(path) is not None


def hash_options(node: Optional[Node]) -> Dict[str, Node]:
    """Symbol-keyed entries of a hash node: {"class_name": <str node>, ...}."""
    options: Dict[str, Node] = {}
    if node is None or node.kind != "hash":
        return options
    for pair in node.child_nodes:
        if pair.kind != "pair" or len(pair.children) < 2:
            continue
        key, value = pair.children[0], pair.children[1]
        if isinstance(key, Node) and key.kind == "sym" and isinstance(value, Node):
            options[key.value] = value
    return options


def association_class_name_node(node: Node) -> Optional[Node]:
    """
    For `has_one :foo, class_name: "Engine::Foo"` return the string node.
    Non-literal class names (`class_name: FOO_CLASS`) are ignored.
    """
    if send_method(node) not in ASSOCIATION_METHODS:
        return None
    args = send_arguments(node)
    if len(args) < 2 or args[0].kind != "sym" or args[-1].kind != "hash":
        return None
    value = hash_options(args[-1]).get("class_name")
    if value is not None and value.kind == "str":
        return value
    return None


def factory_usage(node: Node) -> Optional[str]:
    """Factory name used by `create(:port)`, `build_list(:port, 3)`, ..."""
    if send_method(node) not in FACTORY_BOT_METHODS:
        return None
    args = send_arguments(node)
    if not args or args[0].kind != "sym":
        return None
    return args[0].value


# ============================================================
# ====================== CONFIGURATION =======================
# ============================================================

DEFAULT_SEVERITY = "convention"
DEFAULT_FACTORIES_PATH = "spec/factories"
DEFAULT_CONFIG_FILE = ".cordon.yml"


class ConfigError(Exception):
    """Raised when the rule configuration is missing required keys or is malformed."""


@dataclass
class EngineOverride:
    """Modules `engine` may use in other engines regardless of their protection."""
    engine: str
    allowed_modules: List[str] = field(default_factory=list)


@dataclass
class BoundaryConfig:
    engines_path: str
    root: str = "."
    engines: Optional[List[str]] = None
    engines_prefix: Optional[str] = None
    unprotected_engines: List[str] = field(default_factory=list)
    strongly_protected_engines: List[str] = field(default_factory=list)
    engine_specific_overrides: List[EngineOverride] = field(default_factory=list)
    factory_bot_enabled: bool = False
    factory_bot_outbound_access_allowed_engines: List[str] = field(default_factory=list)
    factories_path: str = DEFAULT_FACTORIES_PATH
    severity: str = DEFAULT_SEVERITY
    enabled: bool = True


@dataclass
class GlobalAccessConfig:
    engines_path: str
    global_models_path: str
    root: str = "."
    allowed_global_models: List[str] = field(default_factory=list)
    disabled_engines: List[str] = field(default_factory=list)
    factory_bot_enabled: bool = False
    factory_bot_global_access_allowed_engines: List[str] = field(default_factory=list)
    factories_path: str = DEFAULT_FACTORIES_PATH
    severity: str = DEFAULT_SEVERITY
    enabled: bool = True


@dataclass
class CordonConfig:
    root: str = "."
    boundary: Optional[BoundaryConfig] = None
    global_access: Optional[GlobalAccessConfig] = None


def _to_str_list(value: Any, key: str) -> List[str]:
    if value is None:
        return []
    if isinstance(value, list):
        return [str(v) for v in value if v is not None]
    if isinstance(value, str):
        return [value]
    raise ConfigError(f"'{key}' must be a list of strings")


def _required_str(raw: Dict[str, Any], key: str, section: str) -> str:
    value = raw.get(key)
    if value in (None, ""):
        raise ConfigError(f"{section}: missing required key '{key}'")
    return str(value)


def _overrides_from_raw(raw_overrides: Any) -> List[EngineOverride]:
    if raw_overrides is None:
        return []
    if not isinstance(raw_overrides, list):
        raise ConfigError("'EngineSpecificOverrides' must be a list of {Engine, AllowedModules} mappings")
    overrides: List[EngineOverride] = []
    for index, raw_override in enumerate(raw_overrides):
        if not isinstance(raw_override, dict) or not raw_override.get("Engine"):
            raise ConfigError(f"'EngineSpecificOverrides' entry {index} needs an 'Engine' key")
        overrides.append(
            EngineOverride(
                engine=str(raw_override["Engine"]),
                allowed_modules=_to_str_list(raw_override.get("AllowedModules"), "AllowedModules"),
            )
        )
    return overrides


def boundary_config_from_mapping(raw: Dict[str, Any], root: str = ".") -> BoundaryConfig:
    section = EngineApiBoundary.id
    engines = raw.get("Engines")
    return BoundaryConfig(
        engines_path=_required_str(raw, "EnginesPath", section),
        root=root,
        engines=_to_str_list(engines, "Engines") if engines is not None else None,
        engines_prefix=str(raw["EnginesPrefix"]) if raw.get("EnginesPrefix") else None,
        unprotected_engines=_to_str_list(raw.get("UnprotectedEngines"), "UnprotectedEngines"),
        strongly_protected_engines=_to_str_list(
            raw.get("StronglyProtectedEngines"), "StronglyProtectedEngines"
        ),
        engine_specific_overrides=_overrides_from_raw(raw.get("EngineSpecificOverrides")),
        factory_bot_enabled=bool(raw.get("FactoryBotEnabled", False)),
        factory_bot_outbound_access_allowed_engines=_to_str_list(
            raw.get("FactoryBotOutboundAccessAllowedEngines"), "FactoryBotOutboundAccessAllowedEngines"
        ),
        factories_path=str(raw.get("FactoriesPath") or DEFAULT_FACTORIES_PATH),
        severity=str(raw.get("Severity") or DEFAULT_SEVERITY),
        enabled=bool(raw.get("Enabled", True)),
    )


def global_access_config_from_mapping(raw: Dict[str, Any], root: str = ".") -> GlobalAccessConfig:
    section = GlobalModelAccessFromEngine.id
    return GlobalAccessConfig(
        engines_path=_required_str(raw, "EnginesPath", section),
        global_models_path=_required_str(raw, "GlobalModelsPath", section),
        root=root,
        allowed_global_models=_to_str_list(raw.get("AllowedGlobalModels"), "AllowedGlobalModels"),
        disabled_engines=_to_str_list(raw.get("DisabledEngines"), "DisabledEngines"),
        factory_bot_enabled=bool(raw.get("FactoryBotEnabled", False)),
        factory_bot_global_access_allowed_engines=_to_str_list(
            raw.get("FactoryBotGlobalAccessAllowedEngines"), "FactoryBotGlobalAccessAllowedEngines"
        ),
        factories_path=str(raw.get("FactoriesPath") or DEFAULT_FACTORIES_PATH),
        severity=str(raw.get("Severity") or DEFAULT_SEVERITY),
        enabled=bool(raw.get("Enabled", True)),
    )


def config_from_mapping(doc: Any, root: str = ".") -> CordonConfig:
    """
    Build the run configuration from a parsed YAML document:

        AllRules:                  # optional defaults shared by both rules
          EnginesPath: engines
        EngineApiBoundary:
          StronglyProtectedEngines: [billing]
        GlobalModelAccessFromEngine:
          GlobalModelsPath: app/models

    A rule runs when its section is present and not `Enabled: false`.
    """
    if doc is None:
        doc = {}
    if not isinstance(doc, dict):
        raise ConfigError("configuration must be a YAML mapping")

    shared = doc.get("AllRules") or {}
    if not isinstance(shared, dict):
        raise ConfigError("'AllRules' must be a mapping")

    def _section(name: str) -> Optional[Dict[str, Any]]:
        if name not in doc:
            return None
        raw = doc.get(name) or {}
        if not isinstance(raw, dict):
            raise ConfigError(f"'{name}' must be a mapping")
        merged = dict(shared)
        merged.update(raw)
        return merged

    config = CordonConfig(root=root)
    boundary_raw = _section(EngineApiBoundary.id)
    if boundary_raw is not None and boundary_raw.get("Enabled", True):
        config.boundary = boundary_config_from_mapping(boundary_raw, root)
    global_raw = _section(GlobalModelAccessFromEngine.id)
    if global_raw is not None and global_raw.get("Enabled", True):
        config.global_access = global_access_config_from_mapping(global_raw, root)

    # Both rules read one shared FactoryIndex, so they must agree on where factories live.
    if config.boundary is not None and config.global_access is not None:
        for key, ours, theirs in (
            ("EnginesPath", config.boundary.engines_path, config.global_access.engines_path),
            ("FactoriesPath", config.boundary.factories_path, config.global_access.factories_path),
        ):
            if _with_trailing_slash(ours) != _with_trailing_slash(theirs):
                raise ConfigError(
                    f"'{key}' differs between {EngineApiBoundary.id} ({ours!r}) and "
                    f"{GlobalModelAccessFromEngine.id} ({theirs!r}); set it once under 'AllRules'"
                )
    return config


def load_config_from_yaml(path: str, root: Optional[str] = None) -> CordonConfig:
    """
    Load the run configuration. Relative paths in it resolve against `root`,
    which defaults to the directory holding the config file.
    """
    try:
        with open(path, "r", encoding="utf-8") as handle:
            doc = yaml.safe_load(handle)
    except FileNotFoundError as exc:
        raise ConfigError(f"configuration file not found: {path}") from exc
    except yaml.YAMLError as exc:
        raise ConfigError(f"invalid YAML in {path}: {exc}") from exc
    except OSError as exc:
        raise ConfigError(f"could not read {path}: {exc}") from exc

    if root is None:
        root = os.path.dirname(os.path.abspath(path))
    return config_from_mapping(doc, root)


# ============================================================
# ======================== ENGINE API ========================
# ============================================================

API_FILE_BASENAMES = {
    "allowlist": "_allowlist.rb",
    "whitelist": "_whitelist.rb",
    "legacy_dependents": "_legacy_dependents.rb",
}

# Module names accepted inside each kind of API file.
API_MODULE_NAMES = {
    "allowlist": ("Allowlist", "Whitelist"),
    "whitelist": ("Whitelist", "Allowlist"),
    "legacy_dependents": ("LegacyDependents",),
}


def list_engine_directories(root: str, engines_path: str) -> List[str]:
    """Directory names directly under the engines root, sorted."""
    engines_dir = os.path.join(root, engines_path)
    try:
        entries = os.listdir(engines_dir)
    except OSError:
        _warn_once(f"engines:{engines_dir}", f"Engines directory not found: {engines_dir}")
        return []
    return sorted(entry for entry in entries if os.path.isdir(os.path.join(engines_dir, entry)))


def engine_name_from_path(
    file_path: Optional[str],
    engines_path: str,
    engines: Optional[List[str]] = None,
    engines_prefix: Optional[str] = None,
) -> Optional[str]:
    """
    Owning engine of a file, e.g. ".../engines/my_engine/app/x.rb" -> "MyEngine"
    (or "Prefix::MyEngine"). With an explicit engine list, the first engine
    whose "<engine>/" appears in the path wins.
    """
    if not file_path:
        return None
    file_path = _posix(file_path)
    engines_path = _with_trailing_slash(engines_path)
    directory: Optional[str] = None
    if engines is not None:
        directory = next((engine for engine in engines if f"{engine}/" in file_path), None)
    elif engines_path in file_path:
        directory = file_path.split(engines_path)[-1].split("/")[0]
    if not directory:
        return None
    name = camelize(directory)
    return f"{engines_prefix}::{name}" if engines_prefix else name


def engine_directory_name(engine_name: str, engines_prefix: Optional[str] = None) -> str:
    if engines_prefix and engine_name.startswith(engines_prefix + "::"):
        engine_name = engine_name[len(engines_prefix) + 2:]
    return underscore(engine_name)


def api_file_path(
    root: str,
    engines_path: str,
    engine_name: str,
    kind: str,
    engines_prefix: Optional[str] = None,
) -> str:
    """`<engines>/my_engine/app/api/my_engine/api/_allowlist.rb` and friends."""
    directory = engine_directory_name(engine_name, engines_prefix)
    return os.path.join(
        root, engines_path, directory, "app", "api", directory, "api", API_FILE_BASENAMES[kind]
    )


def extract_api_list(
    root: str,
    engines_path: str,
    engine_name: str,
    kind: str,
    engines_prefix: Optional[str] = None,
) -> List[str]:
    """
    Entries of an engine's API file, in file order. The file must look like

        module MyEngine::Api::Allowlist
          PUBLIC_MODULES = [
            MyEngine::BarService,
          ]
        end

    Const entries come back as their name, string entries without quotes.
    A missing file, or one without that shape, gives an empty list.
    """
    if kind not in API_FILE_BASENAMES:
        raise ValueError(f"unknown API file kind: {kind!r}")
    path = api_file_path(root, engines_path, engine_name, kind, engines_prefix)
    if not os.path.isfile(path):
        return []
    source_file = parse_ruby_file(path)
    if source_file is None:
        return []
    return _api_array_values(source_file.root, API_MODULE_NAMES[kind])


def _api_array_values(root: Node, module_names: Tuple[str, ...]) -> List[str]:
    # Matches both `module MyEngine::Api::Allowlist` and the nested
    # `module MyEngine; module Api; module Allowlist` spelling.
    suffixes = tuple(f"Api::{name}" for name in module_names)

    def visit(node: Node, namespace: str) -> Optional[List[str]]:
        if node.kind == "module":
            name = const_name(node.children[0]) or ""
            namespace = f"{namespace}::{name}" if namespace else name
            if namespace.endswith(suffixes):
                values = _first_constant_array(node.children[1])
                if values is not None:
                    return values
        for child in node.child_nodes:
            found = visit(child, namespace)
            if found is not None:
                return found
        return None

    return visit(root, "") or []


def _first_constant_array(body: Any) -> Optional[List[str]]:
    statements = body.child_nodes if isinstance(body, Node) else []
    for statement in statements:
        value = statement.children[2] if statement.kind == "casgn" else None
        # `LIST = [...].freeze`
        if isinstance(value, Node) and send_method(value) == "freeze" and isinstance(value.children[0], Node):
            value = value.children[0]
        if isinstance(value, Node) and value.kind == "array":
            return [_literal_text(element) for element in value.child_nodes]
    return None


def _literal_text(node: Node) -> str:
    if node.kind == "str":
        return node.value
    if node.kind == "const":
        return const_name(node) or node.source
    return node.source.strip("'\"")


def api_files_checksum(
    root: str,
    engines_path: str,
    engine_names: List[str],
    engines_prefix: Optional[str] = None,
) -> str:
    """SHA1 over the existence and modification time of each engine's API files."""
    digest = hashlib.sha1()
    for engine_name in sorted(engine_names):
        for kind in API_FILE_BASENAMES:
            path = api_file_path(root, engines_path, engine_name, kind, engines_prefix)
            try:
                state = repr(os.path.getmtime(path))
            except OSError:
                state = "missing"
            digest.update(f"{_posix(path)}:{state}\n".encode("utf-8"))
    return digest.hexdigest()


# ============================================================
# ====================== FACTORY INDEX =======================
# ============================================================

@dataclass
class FactoryDefinition:
    name: str
    path: str
    aliases: List[str] = field(default_factory=list)
    model_class_name: Optional[str] = None
    parent_name: Optional[str] = None
    source_range: Optional[SourceRange] = None

    @property
    def names(self) -> List[str]:
        return [self.name] + self.aliases


def _factory_definition_call(node: Node) -> bool:
    if send_method(node) != "factory":
        return False
    args = send_arguments(node)
    return bool(args) and args[0].kind in ("sym", "str")


def _literal_class_name(node: Optional[Node]) -> Optional[str]:
    # Only literal consts and strings resolve statically.
    if node is None:
        return None
    if node.kind == "const":
        return const_name(node)
    if node.kind == "str":
        return strip_leading_colons(node.value) or None
    return None


def _symbol_or_string(node: Optional[Node]) -> Optional[str]:
    if node is not None and node.kind in ("sym", "str"):
        return node.value
    return None


def _factory_definition(
    send: Node,
    path: str,
    enclosing: Optional[FactoryDefinition],
) -> FactoryDefinition:
    args = send_arguments(send)
    options = hash_options(args[-1]) if len(args) > 1 else {}

    aliases_node = options.get("aliases")
    aliases: List[str] = []
    if aliases_node is not None and aliases_node.kind == "array":
        aliases = [v for v in (_symbol_or_string(e) for e in aliases_node.child_nodes) if v]
    elif _symbol_or_string(aliases_node):
        aliases = [_symbol_or_string(aliases_node)]

    definition = FactoryDefinition(
        name=args[0].value,
        path=path,
        aliases=aliases,
        model_class_name=_literal_class_name(options.get("class")),
        parent_name=_symbol_or_string(options.get("parent")),
        source_range=send.source_range,
    )
    if definition.model_class_name is None and definition.parent_name is None and enclosing is not None:
        if enclosing.model_class_name is not None:
            definition.model_class_name = enclosing.model_class_name
        else:
            definition.parent_name = enclosing.name
    return definition


def collect_factory_definitions(root: Node, path: str = "") -> List[FactoryDefinition]:
    """
    Every `factory :name, ...` definition in a tree, in source order.
    Factories nested in another factory's block inherit its class, or defer
    to it as their parent when its class is not known yet.
    """
    definitions: List[FactoryDefinition] = []

    def visit(node: Node, enclosing: Optional[FactoryDefinition]) -> None:
        if node.kind == "block" and _factory_definition_call(node.children[0]):
            definition = _factory_definition(node.children[0], path, enclosing)
            definitions.append(definition)
            for child in node.child_nodes[1:]:
                visit(child, definition)
            return
        if node.kind == "send" and _factory_definition_call(node):
            definitions.append(_factory_definition(node, path, enclosing))
            return
        for child in node.child_nodes:
            visit(child, enclosing)

    visit(root, None)
    return definitions


def resolve_factory_definitions(definitions: List[FactoryDefinition]) -> Dict[str, Dict[str, str]]:
    """
    Give every definition a model class and group the result by file:
    {path: {factory_or_alias_name: model_class_name}}.

    Parents are looked up across all files. Chains resolve over repeated
    passes; whatever is left (unknown parents, cycles) falls back to the
    factory's own name.
    """
    resolved: Dict[str, str] = {}

    def _record(definition: FactoryDefinition, class_name: str) -> None:
        definition.model_class_name = class_name
        for name in definition.names:
            resolved.setdefault(name, class_name)

    pending: List[FactoryDefinition] = []
    for definition in definitions:
        if definition.model_class_name is not None:
            _record(definition, definition.model_class_name)
        elif definition.parent_name is None:
            _record(definition, factory_class_name(definition.name))
        else:
            pending.append(definition)

    while pending:
        unresolved: List[FactoryDefinition] = []
        for definition in pending:
            class_name = resolved.get(definition.parent_name or "")
            if class_name is None:
                unresolved.append(definition)
            else:
                _record(definition, class_name)
        if len(unresolved) == len(pending):
            break
        pending = unresolved

    for definition in pending:
        _record(definition, factory_class_name(definition.name))

    index: Dict[str, Dict[str, str]] = {}
    for definition in definitions:
        table = index.setdefault(definition.path, {})
        for name in definition.names:
            table[name] = definition.model_class_name or factory_class_name(definition.name)
    return index


class FactoryIndex:
    """
    Project-wide map of test factories to the model class each one builds.

    Factory files are `<factories_path>/**/*.rb` plus
    `<engines_path>/*/<factories_path>/**/*.rb`. The index is built on first
    use and kept until reset(); callers running independent analyses in one
    process must reset it between runs.
    """

    def __init__(
        self,
        root: str = ".",
        engines_path: str = "engines",
        factories_path: str = DEFAULT_FACTORIES_PATH,
    ) -> None:
        self.root = root
        self.engines_path = _with_trailing_slash(engines_path)
        self.factories_path = factories_path
        self._factories: Optional[Dict[str, Dict[str, str]]] = None

    def reset(self) -> None:
        self._factories = None

    def factory_files(self) -> List[str]:
        """Factory file paths relative to the project root, sorted."""
        patterns = [
            os.path.join(self.root, self.factories_path, "**", "*.rb"),
            os.path.join(self.root, self.engines_path, "*", self.factories_path, "**", "*.rb"),
        ]
        found: Set[str] = set()
        for pattern in patterns:
            for path in glob.glob(pattern, recursive=True):
                if os.path.isfile(path):
                    found.add(_relative_posix(path, self.root))
        return sorted(found)

    def find_factories(self) -> Dict[str, Dict[str, str]]:
        if self._factories is None:
            self._factories = self._build()
        return self._factories

    def _build(self) -> Dict[str, Dict[str, str]]:
        definitions: List[FactoryDefinition] = []
        for relative_path in self.factory_files():
            source_file = parse_ruby_file(os.path.join(self.root, relative_path), relative_path)
            if source_file is None:
                continue
            definitions.extend(collect_factory_definitions(source_file.root, relative_path))
        return resolve_factory_definitions(definitions)

    def modified_time_checksum(self) -> str:
        mtimes: List[str] = []
        for relative_path in self.factory_files():
            try:
                mtimes.append(repr(os.path.getmtime(os.path.join(self.root, relative_path))))
            except OSError:
                continue
        return hashlib.sha1("".join(mtimes).encode("utf-8")).hexdigest()


# ============================================================
# ========================== RULES ===========================
# ============================================================

@dataclass
class Violation:
    rule_id: str
    severity: str
    message: str

    location: Dict[str, Any]  # {file, line_start, col_start, line_end, col_end}

    context: Dict[str, Any] = field(default_factory=dict)


def _node_location(node: Node, path: str) -> Dict[str, Any]:
    source_range = node.source_range
    if source_range is None:
        return {"file": path, "line_start": 0, "col_start": 0, "line_end": 0, "col_end": 0}
    return {
        "file": path,
        "line_start": source_range.line_start,
        "col_start": source_range.col_start,
        "line_end": source_range.line_end,
        "col_end": source_range.col_end,
    }


class Rule:
    """
    A per-file check. `check` walks the tree and dispatches const and send
    nodes to `on_const` / `on_send`, which report through `add_offense`.
    """

    id = "Rule"

    def __init__(self, severity: str = DEFAULT_SEVERITY) -> None:
        self.severity = severity
        self.path: str = ""
        self._offenses: List[Violation] = []

    def check(self, source_file: SourceFile) -> List[Violation]:
        self.path = source_file.path
        self._offenses = []
        self.start_file(source_file)
        for node in walk(source_file.root):
            if node.kind == "const":
                self.on_const(node)
            elif node.kind == "send":
                self.on_send(node)
        return list(self._offenses)

    def start_file(self, source_file: SourceFile) -> None:
        pass

    def on_const(self, node: Node) -> None:
        pass

    def on_send(self, node: Node) -> None:
        pass

    def add_offense(self, node: Node, message: str) -> None:
        self._offenses.append(
            Violation(
                rule_id=self.id,
                severity=self.severity,
                message=message,
                location=_node_location(node, self.path),
                context={"source": node.source},
            )
        )

    def external_dependency_checksum(self) -> str:
        return ""


class EngineApiBoundary(Rule):
    """
    Flags code outside an engine that reaches into it without going through
    its API.

    An engine's API is:
    - anything under `<Engine>::Api` (files in the engine's `app/api/<engine>/api/`),
    - modules listed in `api/_allowlist.rb` (or the older `api/_whitelist.rb`).

    `api/_legacy_dependents.rb` lists files that still reach in directly and
    are tolerated until migrated. `EngineSpecificOverrides` gives one engine
    access to named modules of another.

    Engines in `StronglyProtectedEngines` get two-way isolation: nobody may
    reach into them and they may not reach into any other engine (or the main
    app's engine API), whatever the allowlists and legacy files say. Overrides
    still apply.

    Associations (`has_one :foo, class_name: "OtherEngine::Foo"`) and, in
    spec files, factories defined in other engines are checked the same way.
    """

    id = "EngineApiBoundary"

    MSG = "Direct access of {accessed_engine} engine. Only access engine via {accessed_engine}::Api."
    STRONGLY_PROTECTED_MSG = (
        "All direct access of {accessed_engine} engine disallowed because "
        "it is in StronglyProtectedEngines list."
    )
    STRONGLY_PROTECTED_CURRENT_MSG = (
        "Direct access of {accessed_engine} is disallowed in this file because "
        "it's in the {current_engine} engine, which is in the StronglyProtectedEngines list."
    )

    MAIN_APP_NAME = "MainApp::EngineApi"

    def __init__(self, config: BoundaryConfig, factory_index: Optional[FactoryIndex] = None) -> None:
        super().__init__(config.severity)
        self.config = config
        self.engines_path = _with_trailing_slash(config.engines_path)
        self.factory_index = factory_index or FactoryIndex(
            config.root, config.engines_path, config.factories_path
        )
        self.current_engine: Optional[str] = None

        self._api_lists: Dict[Tuple[str, str], List[str]] = {}
        self._protected_engines: Optional[List[str]] = None
        self._factory_engines: Optional[Dict[str, Tuple[Optional[str], str]]] = None
        self._strongly_protected = {self._qualify(camelize(e)) for e in config.strongly_protected_engines}
        self._factory_outbound_allowed = {
            self._qualify(camelize(e)) for e in config.factory_bot_outbound_access_allowed_engines
        }
        self._overrides_by_engine: Dict[str, List[str]] = {}
        for override in config.engine_specific_overrides:
            self._overrides_by_engine[self._qualify(camelize(override.engine))] = [
                strip_leading_colons(name) for name in override.allowed_modules
            ]

    def start_file(self, source_file: SourceFile) -> None:
        self.current_engine = self.engine_name_from_path(source_file.path)

    # ---- callbacks ---------------------------------------------------------

    def on_const(self, node: Node) -> None:
        if in_module_or_class_declaration(node):
            return
        if sending_method_to_namespace_itself(node):
            return

        accessed_engine = self._accessed_engine(node)
        if accessed_engine is None:
            return
        if self._valid_engine_access(accessed_engine, const_ancestor_names(node), through_api(node)):
            return

        self.add_offense(node, self._message(accessed_engine))

    def on_send(self, node: Node) -> None:
        class_name_node = association_class_name_node(node)
        if class_name_node is not None:
            self._check_association(class_name_node)

        if not self._check_factories():
            return
        factory = factory_usage(node)
        if factory is not None:
            self._check_factory_usage(node, factory)

    def _check_association(self, class_name_node: Node) -> None:
        class_name = strip_leading_colons(class_name_node.value)
        accessed_engine = self._engine_owning(class_name)
        if accessed_engine is None:
            return
        if self._valid_engine_access(
            accessed_engine,
            name_prefixes(class_name, accessed_engine),
            self._name_through_api(class_name, accessed_engine),
        ):
            return
        self.add_offense(class_name_node, self._message(accessed_engine))

    def _check_factory_usage(self, node: Node, factory: str) -> None:
        entry = self.factory_engines.get(factory)
        if entry is None:
            return
        accessed_engine, model_class_name = entry
        if accessed_engine is None or accessed_engine not in self.protected_engines:
            return
        if self._valid_engine_access(
            accessed_engine,
            name_prefixes(model_class_name, accessed_engine),
            self._name_through_api(model_class_name, accessed_engine),
        ):
            return
        self.add_offense(node, self._message(accessed_engine))

    # ---- freshness ---------------------------------------------------------

    def external_dependency_checksum(self) -> str:
        checksum = api_files_checksum(
            self.config.root, self.engines_path, self.protected_engines, self.config.engines_prefix
        )
        if not self.config.factory_bot_enabled:
            return checksum
        return checksum + self.factory_index.modified_time_checksum()

    # ---- engines -----------------------------------------------------------

    def _qualify(self, engine_name: str) -> str:
        prefix = self.config.engines_prefix
        if prefix and not engine_name.startswith(prefix + "::"):
            return f"{prefix}::{engine_name}"
        return engine_name

    @property
    def protected_engines(self) -> List[str]:
        if self._protected_engines is None:
            unprotected = {camelize(e) for e in self.config.unprotected_engines}
            self._protected_engines = [
                self._qualify(engine) for engine in self._all_engines_camelized() if engine not in unprotected
            ]
        return self._protected_engines

    def _all_engines_camelized(self) -> List[str]:
        if self.config.engines is not None:
            directories = list(self.config.engines)
        else:
            directories = list_engine_directories(self.config.root, self.engines_path)
        return [camelize(directory) for directory in directories]

    def engine_name_from_path(self, file_path: Optional[str]) -> Optional[str]:
        return engine_name_from_path(
            file_path, self.engines_path, self.config.engines, self.config.engines_prefix
        )

    def strongly_protected_engine(self, engine: Optional[str]) -> bool:
        return engine is not None and engine in self._strongly_protected

    def _engine_owning(self, class_name: str) -> Optional[str]:
        for engine in self.protected_engines:
            if class_name == engine or class_name.startswith(engine + "::"):
                return engine
        return None

    @property
    def factory_engines(self) -> Dict[str, Tuple[Optional[str], str]]:
        """factory name -> (engine defining it, model class name)"""
        if self._factory_engines is None:
            engines: Dict[str, Tuple[Optional[str], str]] = {}
            for path, factories in self.factory_index.find_factories().items():
                engine_name = self.engine_name_from_path(path)
                for factory, model_class_name in factories.items():
                    engines[factory] = (engine_name, model_class_name)
            self._factory_engines = engines
        return self._factory_engines

    def _check_factories(self) -> bool:
        return (
            is_spec_file(self.path)
            and self.config.factory_bot_enabled
            and self.current_engine not in self._factory_outbound_allowed
        )

    # ---- policy ------------------------------------------------------------

    def _accessed_engine(self, node: Node) -> Optional[str]:
        name = const_name(node)
        if name is None:
            return None
        if self.strongly_protected_engine(self.current_engine) and name.startswith(self.MAIN_APP_NAME):
            return self.MAIN_APP_NAME
        if name in self.protected_engines:
            return name
        return None

    def _valid_engine_access(self, accessed_engine: str, names: List[str], via_api: bool) -> bool:
        if self.current_engine == accessed_engine:
            return True
        if self._engine_specific_override(names):
            return True

        if self.strongly_protected_engine(self.current_engine):
            return False
        if self.strongly_protected_engine(accessed_engine):
            return False

        return (
            self._in_legacy_dependent_file(accessed_engine)
            or via_api
            or self._allowlisted(names, accessed_engine)
        )

    def _engine_specific_override(self, names: List[str]) -> bool:
        allowed = self._overrides_by_engine.get(self.current_engine or "")
        if not allowed:
            return False
        return any(name in allowed for name in names)

    def _in_legacy_dependent_file(self, accessed_engine: str) -> bool:
        legacy_dependents = self._read_api_file(accessed_engine, "legacy_dependents")
        path = _posix(self.path)
        return any(dependent and dependent in path for dependent in legacy_dependents)

    def _allowlisted(self, names: List[str], accessed_engine: str) -> bool:
        allowlist = self._read_api_file(accessed_engine, "allowlist")
        if not allowlist:
            allowlist = self._read_api_file(accessed_engine, "whitelist")
        if not allowlist:
            return False
        return any(name in allowlist for name in names)

    @staticmethod
    def _name_through_api(class_name: str, engine: str) -> bool:
        api_namespace = f"{engine}::Api"
        return class_name == api_namespace or class_name.startswith(api_namespace + "::")

    def _read_api_file(self, engine: str, kind: str) -> List[str]:
        key = (engine, kind)
        if key not in self._api_lists:
            self._api_lists[key] = extract_api_list(
                self.config.root, self.engines_path, engine, kind, self.config.engines_prefix
            )
        return self._api_lists[key]

    def _message(self, accessed_engine: str) -> str:
        if self.strongly_protected_engine(accessed_engine):
            return self.STRONGLY_PROTECTED_MSG.format(accessed_engine=accessed_engine)
        if self.strongly_protected_engine(self.current_engine):
            return self.STRONGLY_PROTECTED_CURRENT_MSG.format(
                accessed_engine=accessed_engine, current_engine=self.current_engine
            )
        return self.MSG.format(accessed_engine=accessed_engine)


class GlobalModelAccessFromEngine(Rule):
    """
    Flags engine code reaching directly into global models (classes defined
    under GlobalModelsPath, e.g. `app/models`): bare constant references,
    associations naming them, and, in engine specs, global factories.

    `SomeGlobalModel::SOME_CONST` is allowed, as are declarations that merely
    share a model's name. Models in `concerns/` directories are not models.
    """

    id = "GlobalModelAccessFromEngine"

    MSG = "Direct access of global model `{model}` from within Rails Engine."

    def __init__(self, config: GlobalAccessConfig, factory_index: Optional[FactoryIndex] = None) -> None:
        super().__init__(config.severity)
        self.config = config
        self.engines_path = _with_trailing_slash(config.engines_path)
        self.global_models_path = _with_trailing_slash(config.global_models_path)
        self.factory_index = factory_index or FactoryIndex(
            config.root, config.engines_path, config.factories_path
        )
        self._global_model_names: Optional[Set[str]] = None
        self._global_factories: Optional[Dict[str, str]] = None
        self._enforced = False
        self._check_factories = False

    def start_file(self, source_file: SourceFile) -> None:
        path = _posix(source_file.path)
        self._enforced = self._in_enforced_engine_file(path)
        self._check_factories = self._enforced and self._check_for_global_factories(path)

    # ---- callbacks ---------------------------------------------------------

    def on_const(self, node: Node) -> None:
        if not self._enforced:
            return
        name = const_name(node)
        if name is None or name not in self.global_model_names:
            return
        if child_of_const(node):
            return
        if in_module_or_class_declaration(node):
            return
        self.add_offense(node, self._message(name))

    def on_send(self, node: Node) -> None:
        if not self._enforced:
            return

        class_name_node = association_class_name_node(node)
        if class_name_node is not None:
            class_name = strip_leading_colons(class_name_node.value)
            if class_name in self.global_model_names:
                self.add_offense(class_name_node, self._message(class_name))

        if not self._check_factories:
            return
        factory = factory_usage(node)
        if factory is not None and factory in self.global_factories:
            self.add_offense(node, self._message(self.global_factories[factory]))

    # ---- freshness ---------------------------------------------------------

    def external_dependency_checksum(self) -> str:
        parts = self.model_file_paths()
        if self.config.factory_bot_enabled:
            parts = parts + sorted(self.global_factories)
        return hashlib.sha1("".join(parts).encode("utf-8")).hexdigest()

    # ---- models and factories ---------------------------------------------

    def model_file_paths(self) -> List[str]:
        """Model files under GlobalModelsPath, relative to it, sorted."""
        models_dir = os.path.join(self.config.root, self.global_models_path)
        if not os.path.isdir(models_dir):
            _warn_once(f"models:{models_dir}", f"Global models directory not found: {models_dir}")
            return []
        paths = glob.glob(os.path.join(models_dir, "**", "*.rb"), recursive=True)
        return sorted(_relative_posix(path, models_dir) for path in paths if os.path.isfile(path))

    @property
    def global_model_names(self) -> Set[str]:
        if self._global_model_names is None:
            names: Set[str] = set()
            for relative_path in self.model_file_paths():
                if "concerns" in relative_path.split("/")[:-1]:
                    continue
                names.add(classify(relative_path[: -len(".rb")]))
            self._global_model_names = names - set(self.config.allowed_global_models)
        return self._global_model_names

    @property
    def global_factories(self) -> Dict[str, str]:
        """Factories defined outside the engines root: name -> model class."""
        if self._global_factories is None:
            factories: Dict[str, str] = {}
            for path, table in self.factory_index.find_factories().items():
                if path.startswith(self.engines_path):
                    continue
                factories.update(table)
            self._global_factories = factories
        return self._global_factories

    # ---- file scope --------------------------------------------------------

    def _engine_path_segment(self, engine: str) -> str:
        return f"{self.engines_path}{underscore(engine)}/"

    def _in_enforced_engine_file(self, path: str) -> bool:
        if self.engines_path not in path:
            return False
        # Full "<engines>/<engine>/" segments, so a disabled `foo` leaves `foo_bar` enforced.
        return not any(self._engine_path_segment(engine) in path for engine in self.config.disabled_engines)

    def _check_for_global_factories(self, path: str) -> bool:
        if not (is_spec_file(path) and self.config.factory_bot_enabled):
            return False
        return not any(
            self._engine_path_segment(engine) in path
            for engine in self.config.factory_bot_global_access_allowed_engines
        )

    def _message(self, model: str) -> str:
        return self.MSG.format(model=model)


# ============================================================
# ========================= ANALYZER =========================
# ============================================================

def build_rules(config: CordonConfig, factory_index: FactoryIndex) -> List[Rule]:
    rules: List[Rule] = []
    if config.boundary is not None and config.boundary.enabled:
        rules.append(EngineApiBoundary(config.boundary, factory_index))
    if config.global_access is not None and config.global_access.enabled:
        rules.append(GlobalModelAccessFromEngine(config.global_access, factory_index))
    return rules


class Analyzer:
    """
    Runs every enabled rule over parsed files.

    The analyzer owns the FactoryIndex shared by its rules (or uses the one
    passed in). reset() drops the index and every cached API list, so the
    next run sees the files on disk afresh.
    """

    def __init__(self, config: CordonConfig, factory_index: Optional[FactoryIndex] = None) -> None:
        self.config = config
        if factory_index is None:
            rule_config = config.boundary or config.global_access
            if rule_config is not None:
                factory_index = FactoryIndex(config.root, rule_config.engines_path, rule_config.factories_path)
            else:
                factory_index = FactoryIndex(config.root)
        self.factory_index = factory_index
        self.rules = build_rules(config, factory_index)

    def reset(self) -> None:
        self.factory_index.reset()
        self.rules = build_rules(self.config, self.factory_index)

    def analyze_source(self, source: str, path: str) -> List[Violation]:
        return self.analyze(parse_ruby_source(source, path))

    def analyze(self, source_file: SourceFile) -> List[Violation]:
        violations: List[Violation] = []
        for rule in self.rules:
            violations.extend(rule.check(source_file))
        return violations

    def analyze_file(self, path: str) -> List[Violation]:
        source_file = parse_ruby_file(path)
        if source_file is None:
            return []
        return self.analyze(source_file)

    def analyze_files(self, paths: List[str]) -> List[Violation]:
        violations: List[Violation] = []
        for path in expand_source_paths(paths):
            violations.extend(self.analyze_file(path))
        return violations

    def external_dependency_checksum(self) -> str:
        """
        Changes whenever an engine API file, model file or (when factory
        checks are on) factory file changes. Meant for an external result
        cache; the analyzer itself never consults it.
        """
        parts = [f"{rule.id}:{rule.external_dependency_checksum()}" for rule in self.rules]
        return hashlib.sha1("\n".join(parts).encode("utf-8")).hexdigest()


def expand_source_paths(paths: List[str]) -> List[str]:
    """Files as given; directories expand to the `*.rb` files below them."""
    expanded: List[str] = []
    for path in paths:
        if os.path.isdir(path):
            expanded.extend(sorted(glob.glob(os.path.join(path, "**", "*.rb"), recursive=True)))
        else:
            expanded.append(path)
    return expanded


# ============================================================
# ==================== VIOLATION OUTPUT ======================
# ============================================================

def violation_to_json_obj(v: Violation) -> Dict[str, Any]:
    """
    Convert a Violation into a JSON-friendly dict with a stable field order.
    """
    return {
        "rule_id": v.rule_id,
        "severity": v.severity,
        "message": v.message,
        "location": v.location,
        "context": v.context,
        "tool": "Cordon",
        "version": __version__,
    }


def emit_violations_json(violations: List[Violation], out: Optional[str] = None) -> None:
    """
    Serialize all violations to JSON (list of violation objects).
    """
    as_json = [violation_to_json_obj(v) for v in violations]
    text = json.dumps(as_json, indent=2, sort_keys=False)
    if out:
        with open(out, "w", encoding="utf-8") as f:
            f.write(text + "\n")
    else:
        print(text)


# ============================================================
# ============================ CLI ===========================
# ============================================================

def _add_config_arguments(subparser: argparse.ArgumentParser) -> None:
    subparser.add_argument(
        "--config",
        metavar="CONFIG_FILE",
        default=DEFAULT_CONFIG_FILE,
        help=f"YAML rule configuration (default: {DEFAULT_CONFIG_FILE}).",
    )
    subparser.add_argument(
        "--root",
        metavar="DIR",
        help="Project root that relative config paths resolve against "
             "(default: the config file's directory).",
    )


def main(argv: Optional[List[str]] = None) -> int:
    """
    CLI entry point for Cordon.
    Intended usage:
      cordon check --config .cordon.yml app/ engines/
      cordon checksum --config .cordon.yml
      cordon factories --config .cordon.yml

    `check` exits 1 when violations were found, 2 on configuration errors.
    """
    parser = argparse.ArgumentParser(
        prog="cordon",
        description="Cordon: engine boundary enforcement for Ruby"
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    check_p = subparsers.add_parser(
        "check",
        help="Check Ruby files (or directories) and emit JSON violations."
    )
    _add_config_arguments(check_p)
    check_p.add_argument(
        "--out",
        metavar="OUT_JSON",
        help="Write violations to this JSON file instead of stdout.",
        required=False,
    )
    check_p.add_argument(
        "files",
        nargs="+",
        help="Ruby source files or directories to check."
    )

    checksum_p = subparsers.add_parser(
        "checksum",
        help="Print the checksum of the files the rules depend on (for result caches)."
    )
    _add_config_arguments(checksum_p)

    factories_p = subparsers.add_parser(
        "factories",
        help="Print the resolved factory index as JSON."
    )
    _add_config_arguments(factories_p)

    args = parser.parse_args(argv)

    try:
        config = load_config_from_yaml(args.config, root=args.root)
    except ConfigError as exc:
        sys.stderr.write(f"[cordon] Configuration error: {exc}\n")
        return 2

    analyzer = Analyzer(config)
    if not analyzer.rules:
        sys.stderr.write(f"[cordon] No rules enabled in {args.config}.\n")

    if args.command == "check":
        violations = analyzer.analyze_files(args.files)
        emit_violations_json(violations, out=args.out)
        return 1 if violations else 0

    if args.command == "checksum":
        print(analyzer.external_dependency_checksum())
        return 0

    if args.command == "factories":
        print(json.dumps(analyzer.factory_index.find_factories(), indent=2, sort_keys=True))
        return 0

    # unreachable if parser is correct
    return 1


if __name__ == "__main__":
    sys.exit(main())
