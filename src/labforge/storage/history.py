from __future__ import annotations
import json
import datetime as dt
from pathlib import Path
from typing import Dict, List, Optional, Literal

Status = Literal['done', 'error', 'cancelled']


def _now() -> str:
    return dt.datetime.now(dt.timezone.utc).isoformat()


class RunHistory:
    """
    Per-run history of agent stage outputs.
    - If root_dir is provided: file-backed JSONL at <root_dir>/<run_id>.jsonl
    - If root_dir is None: in-memory only
    - Exposes .outputs (agent id -> latest completed text) for resuming a workflow
    - If a file already exists for run_id, it resumes from it
    """

    def __init__(
        self,
        run_id: Optional[str] = None,
        root_dir: Optional[Path] = None,
        header_meta: Optional[Dict] = None,
    ):
        self._root_dir = Path(root_dir) if root_dir else None
        self._run_id = run_id or dt.datetime.now(dt.timezone.utc).strftime('%Y%m%d-%H%M%S')
        self._header_meta = header_meta or {}
        self._records: List[Dict] = []
        self._outputs: Dict[int, str] = {}
        self._path: Optional[Path] = None

        header = {'type': 'header', 'ts': _now(), 'meta': self._header_meta}
        if self._root_dir:
            self._root_dir.mkdir(parents=True, exist_ok=True)
            self._path = self._root_dir / f'{self._run_id}.jsonl'
            if self._path.exists() and self._path.stat().st_size > 0:
                self._load_from_file()
            else:
                self._write(header)
        else:
            self._records.append(header)

    @property
    def run_id(self) -> str:
        return self._run_id

    @property
    def path(self) -> Optional[Path]:
        return self._path

    @property
    def outputs(self) -> Dict[int, str]:
        return dict(self._outputs)

    def latest(self) -> Optional[tuple[int, str]]:
        if not self._outputs:
            return None
        agent_id = max(self._outputs)
        return agent_id, self._outputs[agent_id]

    def record_stage(self, agent_id: int, title: str, content: str, status: Status = 'done') -> None:
        rec = {
            'type': 'stage',
            'ts': _now(),
            'agent_id': agent_id,
            'title': title,
            'content': content,
            'status': status,
        }
        if self._path:
            self._write(rec)
        else:
            self._records.append(rec)
        if status == 'done':
            self._outputs[agent_id] = content

    def clear_outputs(self) -> None:
        """Forget completed stages (a fresh start from the first agent)."""
        self._outputs = {}
        rec = {'type': 'reset', 'ts': _now()}
        if self._path:
            self._write(rec)
        else:
            self._records.append(rec)

    def entries(self) -> List[Dict]:
        if self._path:
            return list(self._read_records())
        return list(self._records)

    # Internal helpers

    def _write(self, rec: Dict) -> None:
        with self._path.open('a', encoding='utf-8') as f:
            f.write(json.dumps(rec, ensure_ascii=False) + '\n')

    def _read_records(self):
        with self._path.open('r', encoding='utf-8') as f:
            for line in f:
                line = line.strip()
                if not line:
                    continue
                try:
                    yield json.loads(line)
                except ValueError:
                    continue

    def _load_from_file(self) -> None:
        self._outputs = {}
        for obj in self._read_records():
            if obj.get('type') == 'reset':
                self._outputs = {}
            elif obj.get('type') == 'stage' and obj.get('status') == 'done':
                self._outputs[int(obj['agent_id'])] = obj.get('content', '')
