"""Rill: a small statically-annotated scripting language with a tree-walking interpreter."""
from rill.rill_runtime import ScriptRunner, ExecutionResult
from rill.rill_printer import Printer

__all__ = ["ScriptRunner", "ExecutionResult", "Printer"]
