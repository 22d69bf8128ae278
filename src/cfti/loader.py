# loader.py
from __future__ import annotations

import runpy
from pathlib import Path
from typing import List, Optional, Union

from .errors import LoadError
from .model import UnitSet

DEFAULT_UNITS_FILE = "cfti_units.py"


def find_unit_files(root: Union[str, Path] = ".") -> List[Path]:
    """
    Find unit-definition files in `root`.

    Returns:
        cfti_units.py (if present) followed by any other *_units.py, sorted
    """
    root = Path(root)
    default = root / DEFAULT_UNITS_FILE
    found = [default] if default.exists() else []
    found.extend(p for p in sorted(root.glob("*_units.py")) if p != default)
    return found


def discover_units(path: Optional[str] = None, root: Union[str, Path] = ".") -> Path:
    """
    Resolve the unit file to load: an explicit path (".py" optional) or the
    single unit file found in `root`.

    Raises:
      LoadError: missing file, none found, or more than one candidate
    """
    if path:
        p = Path(path)
        if not p.exists() and p.suffix != ".py":
            p = Path(str(p) + ".py")
        if not p.exists():
            raise LoadError(kind="UnitFileNotFound", unit=str(path), message=f"Could not find unit file: {path}")
        return p

    files = find_unit_files(root)
    if not files:
        raise LoadError(
            kind="UnitFileNotFound",
            unit=str(root),
            message="No unit file found",
            details={"looked_for": f"{DEFAULT_UNITS_FILE}, *_units.py"},
        )
    if len(files) > 1:
        raise LoadError(
            kind="AmbiguousUnitFile",
            unit=str(root),
            message="Found multiple unit files, pick one with --units",
            details={"files": ", ".join(str(f) for f in files)},
        )
    return files[0]


def load_units(path: Union[str, Path]) -> UnitSet:
    """
    Load unit definitions from a python file path.

    The file must define either:
      - units() -> UnitSet
      - UNITS = UnitSet (e.g. built with cfti.unit_set(...))

    Raises:
      LoadError
    """
    p = Path(path).expanduser().resolve()
    if not p.exists():
        raise LoadError(kind="UnitFileNotFound", unit=str(p), message=f"Unit file not found: {p}")
    if p.suffix != ".py":
        raise LoadError(kind="BadUnitFile", unit=str(p), message=f"Unit file must be a .py file, got: {p.name}")

    try:
        globals_dict = runpy.run_path(str(p), run_name=f"cfti_units_{p.stem}")
    except (SyntaxError, ImportError, NameError, TypeError, ValueError) as e:
        raise LoadError(kind="BadUnitFile", unit=str(p), message=f"{type(e).__name__}: {e}")

    loaded = None
    # UNITS wins: a file that imports the units() helper also has "units" in scope.
    if "UNITS" in globals_dict:
        loaded = globals_dict["UNITS"]
    elif "units" in globals_dict and callable(globals_dict["units"]):
        try:
            loaded = globals_dict["units"]()
        except TypeError as e:
            if "positional argument" in str(e):
                raise LoadError(
                    kind="BadUnitFile",
                    unit=str(p),
                    message="units() is being called with arguments (name collision with the helper). "
                            "Use the 'unit_set' helper instead: "
                            "`def units(): return unit_set(test(...), scenario(...))`",
                ) from e
            raise
        except ValueError as e:
            raise LoadError(kind="BadUnitFile", unit=str(p), message=str(e)) from e

    if not isinstance(loaded, UnitSet):
        raise LoadError(
            kind="BadUnitFile",
            unit=str(p),
            message="Unit file must return/define a UnitSet. Define units() -> UnitSet or UNITS = unit_set(...).",
        )
    return loaded
