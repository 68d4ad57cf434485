"""Runs a Python artifact inside a RestrictedPython namespace.

Invoked as a child interpreter by the vm-tier sandbox:

    python -I -B restricted_runner.py <artifact.py>

Exit codes: 0 success, 1 runtime error, 2 rejected at compile time.
"""

import operator
import sys
import traceback

from RestrictedPython import compile_restricted, safe_builtins
from RestrictedPython.Eval import default_guarded_getitem, default_guarded_getiter
from RestrictedPython.Guards import (
    full_write_guard,
    guarded_iter_unpack_sequence,
    guarded_unpack_sequence,
    safer_getattr,
)

ALLOWED_MODULES = frozenset(
    {
        "json", "typing", "math", "re", "datetime", "time", "collections",
        "itertools", "functools", "statistics", "string", "decimal", "fractions",
        "random", "base64", "hashlib", "uuid",
    }
)

EXTRA_BUILTINS = {
    "dict": dict,
    "list": list,
    "set": set,
    "frozenset": frozenset,
    "enumerate": enumerate,
    "min": min,
    "max": max,
    "sum": sum,
    "any": any,
    "all": all,
    "map": map,
    "filter": filter,
    "reversed": reversed,
    "iter": iter,
    "next": next,
}

INPLACE_OPERATORS = {
    "+=": operator.iadd,
    "-=": operator.isub,
    "*=": operator.imul,
    "/=": operator.itruediv,
    "//=": operator.ifloordiv,
    "%=": operator.imod,
    "**=": operator.ipow,
    "<<=": operator.ilshift,
    ">>=": operator.irshift,
    "&=": operator.iand,
    "|=": operator.ior,
    "^=": operator.ixor,
}


def guarded_import(name, globals=None, locals=None, fromlist=(), level=0):
    if level != 0 or name.split(".")[0] not in ALLOWED_MODULES:
        raise ImportError(f"import of {name!r} is not allowed in the sandbox")
    return __import__(name, globals, locals, fromlist, level)


def inplace_var(op, target, value):
    return INPLACE_OPERATORS[op](target, value)


def apply_call(func, *args, **kwargs):
    return func(*args, **kwargs)


class StdoutPrinter:
    """print() target that writes straight to the real stdout."""

    def __init__(self, _getattr_=None):
        self._getattr_ = _getattr_

    def write(self, text):
        sys.stdout.write(text)

    def __call__(self):
        return ""

    def _call_print(self, *objects, **kwargs):
        if kwargs.get("file") is None:
            kwargs["file"] = self
        else:
            self._getattr_(kwargs["file"], "write")
        print(*objects, **kwargs)


def build_globals():
    builtins = dict(safe_builtins)
    builtins.update(EXTRA_BUILTINS)
    builtins["__import__"] = guarded_import
    return {
        "__builtins__": builtins,
        "__name__": "artifact",
        "__metaclass__": type,
        "_getattr_": safer_getattr,
        "_getitem_": default_guarded_getitem,
        "_getiter_": default_guarded_getiter,
        "_write_": full_write_guard,
        "_iter_unpack_sequence_": guarded_iter_unpack_sequence,
        "_unpack_sequence_": guarded_unpack_sequence,
        "_inplacevar_": inplace_var,
        "_apply_": apply_call,
        "_print_": StdoutPrinter,
    }


def main(argv):
    if len(argv) != 2:
        print("usage: restricted_runner.py <artifact.py>", file=sys.stderr)
        return 2

    path = argv[1]
    with open(path, encoding="utf-8") as handle:
        source = handle.read()

    try:
        code = compile_restricted(source, filename=path, mode="exec")
    except SyntaxError as e:
        print(f"restricted compile rejected artifact: {e}", file=sys.stderr)
        return 2

    try:
        exec(code, build_globals())
    except Exception:
        traceback.print_exc()
        return 1
    finally:
        sys.stdout.flush()
    return 0


if __name__ == "__main__":
    sys.exit(main(sys.argv))
