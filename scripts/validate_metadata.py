from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path
from typing import Any, List

REPO_ROOT = Path(__file__).resolve().parents[1]
SRC = REPO_ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from wizard_engine.contract import validate_metadata_document  # noqa: E402
from wizard_engine.form_engine.parser import MetadataParser  # noqa: E402


def _load(path: Path) -> Any:
    return json.loads(path.read_text(encoding="utf-8"))


def check_file(path: Path, *, strict: bool) -> List[str]:
    """Schema errors plus parser issues (unresolved references, ambiguous visibility, ...)."""
    doc = _load(path)
    items = doc.get("items") if isinstance(doc, dict) and isinstance(doc.get("items"), list) else doc
    problems = [f"schema {e}" for e in validate_metadata_document(items)]
    index = MetadataParser().parse(items if isinstance(items, list) else [])
    for issue in index.issues:
        if strict or issue.kind == "malformed":
            problems.append(f"{issue.kind} {issue.item_id or '?'}: {issue.message}")
    return problems


def main() -> int:
    ap = argparse.ArgumentParser(description="Validate form metadata files against the metadata contract.")
    ap.add_argument("paths", nargs="+", help="Metadata JSON files")
    ap.add_argument("--strict", action="store_true", help="Also fail on unresolved references and ambiguous visibility")
    args = ap.parse_args()

    failed = 0
    for raw in args.paths:
        path = Path(raw)
        try:
            problems = check_file(path, strict=args.strict)
        except (OSError, ValueError) as e:
            print(f"FAIL {path}: {e}", flush=True)
            failed += 1
            continue
        if problems:
            failed += 1
            print(f"FAIL {path}", flush=True)
            for p in problems:
                print(f"  - {p}", flush=True)
        else:
            print(f"OK   {path}", flush=True)
    return 1 if failed else 0


if __name__ == "__main__":
    raise SystemExit(main())
