from __future__ import annotations

import time
from collections import Counter
from typing import Any, Dict, List, Optional, Sequence


def _format_timestamp(value: Optional[float]) -> str:
    if value is None:
        return "-"
    return time.strftime("%H:%M:%S", time.localtime(value))


def summarize_states(rows: Sequence[Dict[str, Any]]) -> str:
    counter = Counter(str(row.get("state", "locked")) for row in rows)
    if not counter:
        return "none"
    order = ("complete", "unlocked", "locked")
    return ", ".join(f"{name} x{counter[name]}" for name in order if counter.get(name))


def format_dump_table(rows: Sequence[Dict[str, Any]]) -> str:
    if not rows:
        return "No objectives."

    id_width = max(len("Objective"), *(len(str(row["id"])) for row in rows)) + 2
    header = f"{'Objective':<{id_width}}{'State':<11}{'Type':<11}Updated"
    lines: List[str] = [header, "-" * len(header)]
    for row in rows:
        updated = _format_timestamp(row.get("updated_at"))
        lines.append(
            f"{str(row['id']):<{id_width}}{str(row['state']):<11}{str(row.get('type') or '-'):<11}{updated}"
        )
    lines.append("")
    lines.append(f"Summary: {summarize_states(rows)}")
    return "\n".join(lines)


def format_module_list(modules: Sequence[Dict[str, Any]]) -> str:
    if not modules:
        return "No modules found."

    lines: List[str] = []
    for item in modules:
        if item.get("valid"):
            lines.append(
                f"- {item['id']}: {item.get('name') or item['id']} "
                f"({item.get('watches', 0)} watch(es), {item.get('objectives', 0)} objective(s))"
            )
        else:
            lines.append(f"- {item.get('path')}: INVALID ({item.get('error')})")
    return "\n".join(lines)
