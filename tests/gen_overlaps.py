#!/usr/bin/env python3
"""
Generate a set of overlapping chunk files from one random logical file.

Arguments:
  num_chunks       Number of chunk files
  mean_chunk_size  Mean chunk size in bytes (before overlap)
  overlap          Bytes each chunk repeats from the end of its predecessor
  [corrupt_pct]    Percent of overlap bytes to flip in the repeated head,
                   0-100 (default: 0); the last 20 bytes are left intact
  [out_dir]        Output directory (default: chunks)

Writes <out_dir>/original.bin and <out_dir>/part000.bin, part001.bin, ...
so that `binmerge.py out_dir/part*.bin` can be checked against original.bin.

Usage:
  python gen_overlaps.py 8 65536 4096
  python gen_overlaps.py 16 8192 1000 2 /tmp/chunks
"""

import os
import random
import sys

# Tail bytes never corrupted so the fingerprint still matches.
_FINGERPRINT_LEN = 20


def _gen_cuts(rng, n, lo, hi):
    """Return the n-1 cut offsets of a file made of n chunks in [lo, hi]."""
    cuts = []
    pos = 0
    for _ in range(n - 1):
        pos += rng.randint(lo, hi)
        cuts.append(pos)
    total = pos + rng.randint(lo, hi)
    return cuts, total


def _corrupt(rng, head, pct):
    """Flip about pct% of the bytes of head, sparing its fingerprint tail."""
    head = bytearray(head)
    span = max(0, len(head) - _FINGERPRINT_LEN)
    k = round(span * pct / 100)
    for i in rng.sample(range(span), k):
        head[i] ^= 1 + rng.randrange(255)
    return bytes(head)


def main():
    if len(sys.argv) < 4:
        print(__doc__.strip(), file=sys.stderr)
        sys.exit(1)

    n         = int(sys.argv[1])
    mean_size = int(sys.argv[2])
    overlap   = int(sys.argv[3])
    pct       = float(sys.argv[4]) if len(sys.argv) > 4 else 0.0
    out_dir   = sys.argv[5] if len(sys.argv) > 5 else "chunks"

    if n < 1:
        sys.exit("num_chunks must be >= 1")
    if not (0.0 <= pct <= 100.0):
        sys.exit("corrupt_pct must be between 0 and 100")

    rng = random.Random(42)
    lo  = max(overlap + 1, mean_size // 2)
    hi  = max(lo, mean_size * 3 // 2)

    cuts, total = _gen_cuts(rng, n, lo, hi)
    data = os.urandom(total)

    os.makedirs(out_dir, exist_ok=True)
    with open(os.path.join(out_dir, "original.bin"), "wb") as f:
        f.write(data)

    starts = [0] + [c - overlap for c in cuts]
    ends = cuts + [total]
    flipped = 0
    for i, (s, e) in enumerate(zip(starts, ends)):
        chunk = data[s:e]
        if i > 0 and pct > 0:
            head = _corrupt(rng, chunk[:overlap], pct)
            flipped += sum(1 for x, y in zip(head, chunk) if x != y)
            chunk = head + chunk[overlap:]
        with open(os.path.join(out_dir, f"part{i:03d}.bin"), "wb") as f:
            f.write(chunk)

    print(f"chunks:     {n}")
    print(f"mean size:  {mean_size} bytes")
    print(f"overlap:    {overlap} bytes per pair")
    print(f"corrupted:  {flipped} bytes ({pct:.1f}% of overlap)")
    print(f"original:   {os.path.join(out_dir, 'original.bin')}  ({total:,} bytes)")


if __name__ == "__main__":
    main()
