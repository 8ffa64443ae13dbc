from __future__ import annotations
import os, pyarrow as pa, pyarrow.parquet as pq
from typing import Iterable

from ..ports.storage import SnapshotSink
from ..domain.models import DailySnapshot

# amounts stay strings: uint256 does not fit any arrow integer type
_SCHEMA = pa.schema([
    ("date", pa.string()),
    ("vault_id", pa.string()),
    ("chain", pa.string()),
    ("vault_address", pa.string()),
    ("total_deposits", pa.string()),
    ("total_withdrawals", pa.string()),
    ("total_assets", pa.string()),
    ("total_supply", pa.string()),
    ("share_price", pa.string()),
    ("method", pa.string()),
    ("flow_total_assets", pa.string()),
    ("updated_ts", pa.int64()),
])

def _snapshots_to_table(snaps: Iterable[DailySnapshot]) -> pa.Table:
    rows = list(snaps)
    if not rows:
        return pa.Table.from_arrays([pa.array([], type=f.type) for f in _SCHEMA], names=[f.name for f in _SCHEMA])
    table = pa.Table.from_arrays(
        arrays=[pa.array([getattr(s, f.name) for s in rows], f.type) for f in _SCHEMA],
        names=[f.name for f in _SCHEMA],
    )
    return table.sort_by([("date", "ascending"), ("chain", "ascending"), ("vault_id", "ascending")])

class ParquetSnapshotSink(SnapshotSink):
    def __init__(self, out_dir: str, codec: str = "zstd") -> None:
        self.out_dir = out_dir
        self.codec = codec
        os.makedirs(self.out_dir, exist_ok=True)

    def _path(self, name: str) -> str:
        return os.path.join(self.out_dir, f"{name}.parquet")

    def write(self, snapshots: Iterable[DailySnapshot], name: str = "snapshots") -> str:
        path = self._path(name)
        tmp  = path + ".tmp"
        pq.write_table(_snapshots_to_table(snapshots), tmp, compression=self.codec, use_dictionary=True)
        os.replace(tmp, path)
        return path
