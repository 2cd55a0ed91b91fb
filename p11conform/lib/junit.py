from pathlib import Path
from typing import Dict, List, Optional
import xml.etree.ElementTree as ET


def _seconds(ms) -> str:
    return f"{(ms or 0) / 1000:.3f}"


def write_junit(path: Path, suite_name: str, cases: List[dict], skipped: Optional[List[dict]] = None) -> None:
    """One <testsuite> per family/key pair, in the order the pairs first appear."""
    groups: Dict[str, List[dict]] = {}
    for c in cases:
        groups.setdefault(f"{c['family']}.{c['key']}", []).append(c)
    for s in skipped or []:
        groups.setdefault(f"{s['family']}.{s['key_label']}", []).append(dict(s, status="skipped"))

    root = ET.Element("testsuites", name=suite_name)
    totals = {"tests": 0, "failures": 0, "skipped": 0}
    for classname, members in groups.items():
        suite = ET.SubElement(root, "testsuite", name=classname)
        counts = {"tests": 0, "failures": 0, "skipped": 0}
        elapsed = 0
        for c in members:
            counts["tests"] += 1
            elapsed += c.get("duration_ms") or 0
            tc = ET.SubElement(suite, "testcase", classname=classname, name=c["name"],
                               time=_seconds(c.get("duration_ms")))
            if c["status"] == "skipped":
                counts["skipped"] += 1
                ET.SubElement(tc, "skipped", message=c.get("reason", ""))
                continue
            if c["status"] == "failed":
                counts["failures"] += 1
                failure = ET.SubElement(tc, "failure", type=c.get("failure") or "failed",
                                        message=f"{c.get('failure')} at {c.get('step')}")
                failure.text = c.get("detail", "")
            ET.SubElement(tc, "system-out").text = f"log: {c.get('log')}"
        for k, v in counts.items():
            suite.set(k, str(v))
            totals[k] += v
        suite.set("time", _seconds(elapsed))
    for k, v in totals.items():
        root.set(k, str(v))

    path.parent.mkdir(parents=True, exist_ok=True)
    ET.ElementTree(root).write(path, encoding="utf-8", xml_declaration=True)
