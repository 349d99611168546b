#!/usr/bin/env python3
"""
Binary Merge with Overlap Detection

Reassembles a logical file that was split into overlapping physical chunks
(segmented captures, interrupted transfers resumed too early, ...).  The
split points and the amount of overlap are unknown and may be imperfect.

For every adjacent pair (A, B):
  - take the last few bytes of A as a fingerprint,
  - stream through B looking for that fingerprint (rolling two-block buffer,
    so matches straddling a block boundary are never missed),
  - score the implied overlap by a bytewise comparison of A's tail with
    B's head,
  - optionally keep searching for a cleaner candidate (--best).

The winning overlaps are then used to write every file once, skipping the
duplicated head of each file after the first.  Files without a match are
simply concatenated.

Usage:
  python binmerge.py [options] [--] <file> <file>...
  python binmerge.py --best -o merged.bin part1.bin part2.bin part3.bin
"""

import argparse
import os
import sys
from dataclasses import dataclass
from typing import List, Sequence, Tuple

__version__ = "0.2.0"


# ============================================================================
# Configuration
# ============================================================================

BLOCK_SIZE = 4096           # fixed I/O block for searching and comparing
FINGERPRINT_LEN = 20        # tail bytes of the preceding file to look for
QUALITY_THRESHOLD = 0.7     # --best stops once a candidate scores above this
DEFAULT_OUTPUT = "output.bin"


@dataclass
class MergeOptions:
    """Options for overlap resolution."""
    fingerprint_len: int = FINGERPRINT_LEN
    block_size: int = BLOCK_SIZE
    threshold: float = QUALITY_THRESHOLD
    aggressive: bool = False
    verbose: bool = False


class ShortReadError(OSError):
    """A block read came back short although the stream is not at its end."""


# ============================================================================
# Match results
# ============================================================================

@dataclass(frozen=True)
class MatchCandidate:
    """Where a fingerprint was found in the following file.

    position is the absolute offset of the first matched byte; length is
    the fingerprint length.  Everything in front of the match plus the match
    itself is assumed to duplicate the tail of the preceding file.
    """
    found: bool = False
    position: int = 0
    length: int = 0

    @property
    def overlap_count(self) -> int:
        return self.position + self.length if self.found else 0

    def __repr__(self):
        if not self.found:
            return "MATCH(none)"
        return f"MATCH(pos={self.position}, len={self.length})"


@dataclass(frozen=True)
class ScoredMatch(MatchCandidate):
    """A candidate together with the outcome of its bytewise comparison."""
    differing: int = 0

    def __post_init__(self):
        if self.differing < 0 or self.differing > self.overlap_count:
            raise ValueError(
                f"differing bytes {self.differing} outside "
                f"[0, {self.overlap_count}]")

    @property
    def quality(self) -> float:
        """Fraction of the overlap that agrees; 0.0 without an overlap."""
        overlap = self.overlap_count
        if not self.found or overlap == 0:
            return 0.0
        return (overlap - self.differing) / overlap

    def __repr__(self):
        if not self.found:
            return "SCORED(none)"
        return (f"SCORED(pos={self.position}, overlap={self.overlap_count}, "
                f"diff={self.differing}, q={self.quality:.3f})")


# The result of a pair that has to be concatenated in full.
NO_MATCH = ScoredMatch()


@dataclass(frozen=True)
class PlanEntry:
    """One input file and how many of its leading bytes to drop."""
    path: str
    skip: int = 0


# ============================================================================
# Block I/O
# ============================================================================

def _at_eof(stream) -> bool:
    here = stream.tell()
    end = stream.seek(0, os.SEEK_END)
    stream.seek(here)
    return here >= end


def _stream_size(stream) -> int:
    here = stream.tell()
    size = stream.seek(0, os.SEEK_END)
    stream.seek(here)
    return size


def read_block(stream, buf: bytearray, start: int = 0,
               size: int = BLOCK_SIZE, offset: int = None,
               whence: int = os.SEEK_SET) -> int:
    """Read up to `size` bytes into buf[start:start+size].

    If `offset` is given the stream is repositioned first (relative to
    `whence`), otherwise reading continues at the current cursor.  A short
    read is only legal at end of input; anywhere else it means the
    underlying device failed and ShortReadError is raised.
    """
    if offset is not None:
        stream.seek(offset, whence)
    n = stream.readinto(memoryview(buf)[start:start + size]) or 0
    if n < size and not _at_eof(stream):
        raise ShortReadError(
            f"short read: got {n} of {size} bytes before end of stream")
    return n


# ============================================================================
# Pattern search
#
# The buffer holds two blocks.  The first half is the block already read,
# the second half is pre-read.  A pass searches only for occurrences whose
# first byte lies in the first half, i.e. the window
#
#     [0, prev + len(pattern) - 1)
#
# which is what lets a pattern straddle the block boundary.  Then the second
# half slides down and becomes the next first half.
# ============================================================================

def search(stream, pattern: bytes, start: int = 0,
           block_size: int = BLOCK_SIZE) -> MatchCandidate:
    """Find the first occurrence of `pattern` at or after offset `start`."""
    if not pattern:
        raise ValueError("search pattern must not be empty")
    plen = len(pattern)
    # A block must be able to hold a whole occurrence.
    span = max(block_size, plen)
    buf = bytearray(2 * span)

    prev = read_block(stream, buf, 0, span, offset=start)
    position = start

    while True:
        got = read_block(stream, buf, prev, span)
        filled = prev + got

        stop = min(prev + plen - 1, filled)
        hit = buf.find(pattern, 0, stop)
        if hit >= 0:
            return MatchCandidate(found=True, position=position + hit,
                                  length=plen)

        if got == 0:
            break

        buf[:got] = buf[prev:filled]
        position += prev
        prev = got

    return MatchCandidate()


# ============================================================================
# Overlap scoring
# ============================================================================

def compare(stream_a, stream_b, length: int,
            block_size: int = BLOCK_SIZE) -> int:
    """Count differing bytes between the last `length` bytes of A and the
    first `length` bytes of B.

    Both streams are read in lockstep blocks.  If one of them runs dry
    early the comparison is truncated there; bytes that were never read
    are not counted.  When `length` is larger than A the regions are
    aligned on A's end and the head of B that has no counterpart in A
    counts as differing.
    """
    if length < 0:
        raise ValueError("overlap length must be non-negative")
    if length == 0:
        return 0

    size_a = _stream_size(stream_a)
    unmatched = max(0, length - size_a)
    stream_a.seek(size_a - (length - unmatched))
    stream_b.seek(unmatched)

    buf_a = bytearray(block_size)
    buf_b = bytearray(block_size)
    remaining = length - unmatched
    differing = unmatched

    while remaining > 0:
        want = min(block_size, remaining)
        n_a = read_block(stream_a, buf_a, 0, want)
        n_b = read_block(stream_b, buf_b, 0, want)
        n = min(n_a, n_b)
        if n == 0:
            break
        if buf_a[:n] != buf_b[:n]:
            differing += sum(1 for x, y in zip(buf_a[:n], buf_b[:n]) if x != y)
        remaining -= n
        if n < want:
            break

    return differing


def score(candidate: MatchCandidate, stream_a, stream_b,
          block_size: int = BLOCK_SIZE) -> ScoredMatch:
    """Compare the overlap implied by `candidate` and return it scored."""
    if not candidate.found:
        return NO_MATCH
    diff = compare(stream_a, stream_b, candidate.overlap_count, block_size)
    return ScoredMatch(found=True, position=candidate.position,
                       length=candidate.length, differing=diff)


# ============================================================================
# Best-match resolution
# ============================================================================

def extract_fingerprint(stream, length: int = FINGERPRINT_LEN) -> bytes:
    """Return the last `length` bytes of the stream (all of it if shorter)."""
    if length < 1:
        raise ValueError("fingerprint length must be >= 1")
    size = _stream_size(stream)
    take = min(length, size)
    buf = bytearray(take)
    n = read_block(stream, buf, 0, take, offset=size - take)
    return bytes(buf[:n])


def resolve(fingerprint: bytes, stream_a, stream_b,
            aggressive: bool = False,
            threshold: float = QUALITY_THRESHOLD,
            block_size: int = BLOCK_SIZE,
            verbose: bool = False,
            opts: 'MergeOptions' = None) -> ScoredMatch:
    """Locate A's fingerprint in B and pick the overlap to use.

    Without `aggressive` the first match wins whatever its quality.  With
    it, the search resumes one byte past every candidate that does not
    score above `threshold`, and the best candidate seen is returned once
    one clears the threshold or B is exhausted.
    """
    if opts is not None:
        aggressive, threshold = opts.aggressive, opts.threshold
        block_size, verbose = opts.block_size, opts.verbose
    if not fingerprint:
        return NO_MATCH

    best = NO_MATCH
    candidate = search(stream_b, fingerprint, 0, block_size)
    while candidate.found:
        scored = score(candidate, stream_a, stream_b, block_size)
        if verbose:
            print(f"  candidate: {scored!r}", file=sys.stderr)
        if not best.found or scored.quality > best.quality:
            best = scored
        if not aggressive or best.quality > threshold:
            break
        candidate = search(stream_b, fingerprint, candidate.position + 1,
                           block_size)

    return best


def resolve_pairs(paths: Sequence[str],
                  opts: 'MergeOptions' = None,
                  report=None) -> List[ScoredMatch]:
    """Resolve every adjacent pair of `paths`, in order.

    `report`, if given, is called as report(index, fingerprint, result)
    after each pair so a front end can print progress.
    """
    if opts is None:
        opts = MergeOptions()
    results: List[ScoredMatch] = []
    for i in range(1, len(paths)):
        with open(paths[i - 1], 'rb') as fa, open(paths[i], 'rb') as fb:
            fp = extract_fingerprint(fa, opts.fingerprint_len)
            if opts.verbose:
                print(f"pair {i}: {os.path.basename(paths[i - 1])} -> "
                      f"{os.path.basename(paths[i])}, "
                      f"fingerprint {len(fp)} bytes", file=sys.stderr)
            result = resolve(fp, fa, fb, opts=opts)
        results.append(result)
        if report is not None:
            report(i - 1, fp, result)
    return results


# ============================================================================
# Merge
# ============================================================================

def build_plan(paths: Sequence[str],
               results: Sequence[ScoredMatch]) -> Tuple[PlanEntry, ...]:
    """Pair each input with the number of leading bytes to skip."""
    if not paths:
        raise ValueError("nothing to merge")
    if len(results) != len(paths) - 1:
        raise ValueError(f"expected {len(paths) - 1} pair results, "
                         f"got {len(results)}")
    plan = [PlanEntry(paths[0], 0)]
    for path, result in zip(paths[1:], results):
        plan.append(PlanEntry(path, result.overlap_count))
    return tuple(plan)


def _same_file(a: str, b: str) -> bool:
    if os.path.realpath(a) == os.path.realpath(b):
        return True
    try:
        return os.path.samefile(a, b)
    except OSError:
        return False


def merge(paths: Sequence[str], results: Sequence[ScoredMatch],
          output: str, block_size: int = BLOCK_SIZE) -> int:
    """Write the inputs to `output` without their duplicated heads.

    Returns the number of bytes written.  An output that is one of the
    inputs is refused with ValueError before anything is opened.  Any open
    failure aborts with OSError; whatever was written so far stays in
    `output`.
    """
    plan = build_plan(paths, results)
    for entry in plan:
        if _same_file(entry.path, output):
            raise ValueError(f"output {output} would overwrite input "
                             f"{entry.path}")
    written = 0
    with open(output, 'wb') as out:
        for entry in plan:
            with open(entry.path, 'rb') as f:
                f.seek(entry.skip)
                while True:
                    chunk = f.read(block_size)
                    if not chunk:
                        break
                    out.write(chunk)
                    written += len(chunk)
    return written


# ============================================================================
# Summaries
# ============================================================================

def merge_summary(paths: Sequence[str],
                  results: Sequence[ScoredMatch]) -> dict:
    """Return summary statistics for a set of pair results."""
    matched = [r for r in results if r.found]
    return {
        'num_files': len(paths),
        'num_pairs': len(results),
        'num_matched': len(matched),
        'num_unmatched': len(results) - len(matched),
        'overlap_bytes': sum(r.overlap_count for r in matched),
        'differing_bytes': sum(r.differing for r in matched),
    }


def format_summary(paths: Sequence[str],
                   results: Sequence[ScoredMatch]) -> str:
    """Render the per-file report printed before merging."""
    lines = ["Summary:"]
    for i, path in enumerate(paths):
        lines.append(f"File {i + 1}: {os.path.basename(path)}")
        if i == len(paths) - 1:
            break
        r = results[i]
        if r.found:
            lines.append(f" |-> overlap {100.0 * r.quality:.2f}% "
                         f"(out of {r.overlap_count} bytes)")
        else:
            lines.append(" |-> no match")
    return "\n".join(lines)


# ============================================================================
# CLI helpers
# ============================================================================

def _parse_size_suffix(s: str) -> int:
    """Parse a size string with optional k/M suffix (binary multipliers)."""
    s = s.strip()
    if not s:
        raise argparse.ArgumentTypeError("empty size value")
    multipliers = {'k': 1 << 10, 'K': 1 << 10, 'm': 1 << 20, 'M': 1 << 20}
    try:
        if s[-1] in multipliers:
            return int(s[:-1]) * multipliers[s[-1]]
        return int(s)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid size: {s!r}")


def _parse_quality(s: str) -> float:
    try:
        q = float(s)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid quality: {s!r}")
    if not 0.0 <= q <= 1.0:
        raise argparse.ArgumentTypeError("quality must be between 0 and 1")
    return q


def _confirm(prompt: str) -> bool:
    try:
        answer = input(prompt)
    except EOFError:
        return False
    return answer.strip()[:1] in ('y', 'Y')


def _print_pair(index: int, paths: Sequence[str], fp: bytes,
                result: ScoredMatch) -> None:
    print(f"Looking for byte pattern in file "
          f"{os.path.basename(paths[index + 1])}:")
    print(fp.hex(' '))
    if not result.found:
        print("Pattern not found")
    else:
        print(f"Found pattern at position {result.position:x}")
        print(f"Overlap match quota: {100.0 * result.quality:.2f}% "
              f"({result.differing} out of {result.overlap_count} bytes differ)")
    print("---------")


# ============================================================================
# CLI
# ============================================================================

def main(argv=None):
    ap = argparse.ArgumentParser(
        prog='binmerge',
        description='Merge binary files with possible overlap.')
    ap.add_argument('files', nargs='+', metavar='file',
                    help='Input files, in merge order')
    ap.add_argument('--version', action='version',
                    version=f'binmerge {__version__}')
    ap.add_argument('-b', '--best', action='store_true',
                    help='Perform continuous search to find best match')
    ap.add_argument('-o', '--output', default=DEFAULT_OUTPUT, metavar='FILE',
                    help=f'Output file (default: {DEFAULT_OUTPUT})')
    ap.add_argument('--threshold', type=_parse_quality,
                    default=QUALITY_THRESHOLD, metavar='Q',
                    help='Quality at which --best stops searching '
                         f'(default: {QUALITY_THRESHOLD})')
    ap.add_argument('--fingerprint-len', type=int, default=FINGERPRINT_LEN,
                    metavar='N',
                    help=f'Tail bytes used as fingerprint (default: {FINGERPRINT_LEN})')
    ap.add_argument('--block-size', type=_parse_size_suffix,
                    default=BLOCK_SIZE, metavar='N',
                    help=f'I/O block size, k/M suffix allowed (default: {BLOCK_SIZE})')
    ap.add_argument('-y', '--yes', action='store_true',
                    help='Merge without asking for confirmation')
    ap.add_argument('--verbose', action='store_true',
                    help='Print diagnostic messages to stderr')
    args = ap.parse_args(argv)

    if len(args.files) < 2:
        ap.error("at least two input files are required")
    if args.fingerprint_len < 1:
        raise SystemExit("error: --fingerprint-len must be >= 1")
    if args.block_size < 1:
        raise SystemExit("error: --block-size must be >= 1")

    opts = MergeOptions(
        fingerprint_len=args.fingerprint_len,
        block_size=args.block_size,
        threshold=args.threshold,
        aggressive=args.best,
        verbose=args.verbose,
    )

    def report(index, fp, result):
        _print_pair(index, args.files, fp, result)

    try:
        results = resolve_pairs(args.files, opts, report=report)
    except ShortReadError as e:
        raise SystemExit(f"error: {e}")
    except OSError as e:
        raise SystemExit(f"error: file {e.filename} failed to open "
                         f"({e.strerror})")

    print(format_summary(args.files, results))
    print()
    print("Matching files will be merged accordingly (regardless of quota),\n"
          "while non-matching files will simply be concatenated.")

    if not args.yes and not _confirm("Merge files (y/n)? "):
        return 0

    try:
        written = merge(args.files, results, args.output, opts.block_size)
    except ValueError as e:
        raise SystemExit(f"error: {e}")
    except OSError as e:
        raise SystemExit(f"error: file {e.filename} failed to open "
                         f"({e.strerror})")

    stats = merge_summary(args.files, results)
    print(f"Output:       {args.output} ({written:,} bytes)")
    print(f"Pairs:        {stats['num_matched']} merged, "
          f"{stats['num_unmatched']} concatenated")
    if args.verbose:
        print(f"Overlap:      {stats['overlap_bytes']:,} bytes skipped, "
              f"{stats['differing_bytes']:,} differing", file=sys.stderr)
    return 0


# ============================================================================

if __name__ == '__main__':
    sys.exit(main())
