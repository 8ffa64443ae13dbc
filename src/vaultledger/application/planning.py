from __future__ import annotations
from ..domain.errors import ValidationError
from ..domain.models import BlockRange

def validate_range(start_block: int, end_block: int) -> BlockRange:
    if start_block < 0 or end_block < 0:
        raise ValidationError(f"negative block in range [{start_block}, {end_block}]")
    if start_block > end_block:
        raise ValidationError(f"fromBlock {start_block} is after toBlock {end_block}")
    return BlockRange(start_block, end_block)

def plan_chunks(start_block: int, end_block: int, step: int) -> list[BlockRange]:
    if step <= 0:
        raise ValidationError(f"chunk step must be positive, got {step}")
    out: list[BlockRange] = []
    b = start_block
    while b <= end_block:
        fb, tb = b, min(end_block, b + step - 1)
        out.append(BlockRange(fb, tb))
        b = tb + 1
    return out

def split_range(r: BlockRange) -> tuple[BlockRange, BlockRange]:
    mid = (r.start + r.end) // 2
    return BlockRange(r.start, mid), BlockRange(mid + 1, r.end)
