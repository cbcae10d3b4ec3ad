from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path

# Ensure src imports work when running as `python scripts/export_metadata_schema.py`
REPO_ROOT = Path(__file__).resolve().parents[1]
SRC = REPO_ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from wizard_engine.contract import metadata_json_schema, schema_version  # noqa: E402

DEFAULT_OUT = REPO_ROOT / "shared" / "form-metadata-contract" / "metadata.schema.json"


def main() -> int:
    ap = argparse.ArgumentParser(description="Write the form metadata JSON schema.")
    ap.add_argument("--out", default=str(DEFAULT_OUT), help="Output path (default: %(default)s)")
    args = ap.parse_args()

    out = Path(args.out)
    out.parent.mkdir(parents=True, exist_ok=True)
    out.write_text(json.dumps(metadata_json_schema(), ensure_ascii=False, indent=2) + "\n", encoding="utf-8")
    print(f"Wrote {out} (schemaVersion={schema_version()})")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
