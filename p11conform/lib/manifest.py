from pathlib import Path
from .hashutil import sha256_file
import json
import time


def write_manifest(results_dir: Path, out_path: Path, run_id: str) -> dict:
    files = []
    if results_dir.is_dir():
        for p in sorted(results_dir.rglob("*")):
            if p.is_dir():
                continue
            files.append({
                "path": p.relative_to(results_dir).as_posix(),
                "sha256": sha256_file(p),
                "bytes": p.stat().st_size,
            })
    obj = {
        "format": "P11CONFORM-MANIFEST-1",
        "created_at": int(time.time()),
        "run_id": run_id,
        "files": files,
    }
    out_path.parent.mkdir(parents=True, exist_ok=True)
    out_path.write_text(json.dumps(obj, sort_keys=True, indent=2) + "\n", encoding="utf-8")
    return obj
