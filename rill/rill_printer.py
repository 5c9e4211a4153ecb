"""
A pretty-printer for Rill values.
"""
from fractions import Fraction

from rill.rill_datatypes import FunctionMarker, Lambda, ReturnValue, StructInstance


class Printer:
    """Formats Rill values into readable Rill source strings."""

    def __init__(self):
        self._handlers = self._create_handlers()

    def pformat(self, obj) -> str:
        """Public entry point to format a value."""
        return self._get_handler(obj)(obj)

    def display(self, obj) -> str:
        """Like pformat, but strings are shown without quotes (used by `print`)."""
        if isinstance(obj, str):
            return obj
        return self.pformat(obj)

    def _get_handler(self, obj):
        obj_type = type(obj)
        if obj_type in self._handlers:
            return self._handlers[obj_type]
        if isinstance(obj, list):
            return self._pformat_list
        return repr

    def _create_handlers(self):
        return {
            Fraction: self._pformat_number,
            str: self._pformat_str,
            bool: self._pformat_bool,
            type(None): self._pformat_none,
            list: self._pformat_list,
            StructInstance: self._pformat_struct,
            Lambda: repr,
            FunctionMarker: repr,
            ReturnValue: self._pformat_return,
        }

    def _pformat_number(self, obj: Fraction) -> str:
        if obj.denominator == 1:
            return str(obj.numerator)
        return f"{obj.numerator}/{obj.denominator}"

    def _pformat_str(self, obj: str) -> str:
        escaped = obj.replace("\\", "\\\\").replace("'", "\\'").replace("\n", "\\n")
        return f"'{escaped}'"

    def _pformat_bool(self, obj: bool) -> str:
        return "true" if obj else "false"

    def _pformat_none(self, obj) -> str:
        return "void"

    def _pformat_list(self, obj: list) -> str:
        return "[" + ", ".join(self.pformat(item) for item in obj) + "]"

    def _pformat_struct(self, obj: StructInstance) -> str:
        if not obj.fields:
            return f"{obj.struct_name} {{}}"
        inner = ", ".join(f"{k}: {self.pformat(v)}" for k, v in obj.fields.items())
        return f"{obj.struct_name} {{ {inner} }}"

    def _pformat_return(self, obj: ReturnValue) -> str:
        return self.pformat(obj.value)
