#!/usr/bin/env python3
# /// script
# requires-python = ">=3.10"
# dependencies = [
#     "biopython",
#     "loguru",
# ]
# ///

"""
Search FASTQ records for a pattern and print the ones that match.

Works like `grep`, but on whole 4-line records: the pattern is searched in the
read sequence (or the read identifier with --id), and selected records can be
counted, trimmed around the match, or split from the non-matching ones.
"""

from __future__ import annotations

import argparse
import gzip
import io
import re
import sys
from contextlib import ExitStack, contextmanager
from dataclasses import dataclass, replace
from enum import Enum, auto
from typing import TYPE_CHECKING, NamedTuple, NoReturn, TextIO

from Bio.SeqIO.QualityIO import FastqGeneralIterator
from loguru import logger

if TYPE_CHECKING:
    from collections.abc import Iterable, Iterator, Sequence

# ------------------------------- CONSTANTS -------------------------------- #

__version__ = "0.1.0"

PROG_NAME = "fastq-grep"

# Path that stands for standard input
STDIN_PATH = "-"

# Every byte maps to one character, so input bytes are matched and written back unchanged
FASTQ_ENCODING = "latin-1"

GZIP_MAGIC = b"\x1f\x8b"

# Emit a progress debug line after processing this many records
DEBUG_EVERY: int = 100_000


# -------------------------------- ERRORS ---------------------------------- #


class ConfigError(ValueError):
    """Invalid run configuration, detected before any record is read."""


# ------------------------------- DATA TYPES -------------------------------- #


@dataclass(frozen=True)
class FastqRecord:
    """One read: the full header line (without '@'), sequence and qualities."""

    identifier: str
    sequence: str
    quality: str

    @property
    def name(self) -> str:
        """The read name, i.e. the header up to its first whitespace."""
        return self.identifier.split(maxsplit=1)[0] if self.identifier.strip() else ""

    def to_fastq(self) -> str:
        return f"@{self.identifier}\n{self.sequence}\n+\n{self.quality}\n"


class MatchSpan(NamedTuple):
    """Half-open [start, end) offsets of the first match within the searched field."""

    start: int
    end: int


class SearchField(Enum):
    """Which part of the record the pattern is matched against."""

    SEQUENCE = auto()
    ID = auto()

    def select(self, record: FastqRecord) -> str:
        match self:
            case SearchField.SEQUENCE:
                return record.sequence
            case SearchField.ID:
                return record.identifier


class TrimSide(Enum):
    """Which side of the match is cut away."""

    BEFORE = auto()  # drop the head, keep from the match onward
    AFTER = auto()  # drop the tail, keep up to the match


@dataclass(frozen=True)
class TrimPolicy:
    """
    How a selected record is trimmed around its match span.

    - BEFORE: keep [match start, L), or [match end, L) with trim_match
    - AFTER:  keep [0, match end), or [0, match start) with trim_match

    trim_match moves the cut to the far edge of the match, so the matched
    bases themselves are removed as well.
    """

    side: TrimSide
    trim_match: bool = False

    def keep_range(self, span: MatchSpan, length: int) -> tuple[int, int]:
        """Return the (start, end) slice of the sequence that survives trimming."""
        match self.side:
            case TrimSide.BEFORE:
                cut = span.end if self.trim_match else span.start
                return cut, length
            case TrimSide.AFTER:
                cut = span.start if self.trim_match else span.end
                return 0, cut


@dataclass(frozen=True)
class GrepConfig:
    """
    Settings for one run, fixed once parsed from the command line.

    A trim policy of None means records are written untrimmed. Trimming is
    rejected together with identifier matching (there is no span in the
    sequence to cut at) and together with inverted matching (selected
    records are exactly the ones without a match).
    """

    field: SearchField = SearchField.SEQUENCE
    invert: bool = False
    count: bool = False
    trim: TrimPolicy | None = None

    def __post_init__(self) -> None:
        if self.trim is not None and self.field is SearchField.ID:
            msg = "Makes no sense to trim IDs."
            raise ConfigError(msg)
        if self.trim is not None and self.invert:
            msg = "Cannot trim records selected by --invert-match."
            raise ConfigError(msg)


@dataclass
class GrepStats:
    """Running totals for one invocation, across all input files."""

    records: int = 0
    selected: int = 0
    trimmed: int = 0
    mismatched: int = 0  # written to the mismatch sink
    dropped: int = 0  # not selected and no mismatch sink
    files_read: int = 0
    files_skipped: int = 0

    def summary(self) -> str:
        return (
            f"Records: {self.records} | Selected: {self.selected} | Trimmed: {self.trimmed} | "
            f"Mismatched: {self.mismatched} | Dropped: {self.dropped} | "
            f"Files read: {self.files_read} | Files skipped: {self.files_skipped}"
        )


@dataclass(frozen=True)
class PatternMatcher:
    """A case-insensitive regular expression compiled once per run."""

    regex: re.Pattern[str]

    @classmethod
    def compile(cls, pattern: str) -> PatternMatcher:
        try:
            regex = re.compile(pattern, re.IGNORECASE)
        except re.error as err:
            msg = f"Syntax error in pattern at offset: {err.pos}: {err.msg}"
            raise ConfigError(msg) from err
        return cls(regex)

    def search(self, text: str) -> MatchSpan | None:
        """Return the span of the first match in `text`, or None."""
        found = self.regex.search(text)
        if found is None:
            return None
        return MatchSpan(found.start(), found.end())


# ----------------------------- LOGGING SETUP ------------------------------- #


def configure_logging(verbose: int, quiet: int) -> None:
    """
    Pick the stderr log level from the --verbose and -q/--quiet counts
    (-v is --invert-match, so verbosity has no short flag).

    Base at SUCCESS (0); the summary line after a run is logged there.
    verbose - quiet maps to:
      +3.. = TRACE
      +2   = DEBUG
      +1   = INFO
       0   = SUCCESS
      -1   = WARNING
      -2   = ERROR
      <=-3 = CRITICAL
    """
    logger.remove()
    delta = verbose - quiet
    match delta:
        case d if d >= 3:  # noqa: PLR2004
            level_str = "TRACE"
        case 2:
            level_str = "DEBUG"
        case 1:
            level_str = "INFO"
        case 0:
            level_str = "SUCCESS"
        case -1:
            level_str = "WARNING"
        case -2:
            level_str = "ERROR"
        case d if d <= -3:  # noqa: PLR2004
            level_str = "CRITICAL"
    logger.add(sys.stderr, level=level_str)
    logger.debug(f"Logger configured at level: {level_str}")


# ------------------------------ FASTQ I/O ---------------------------------- #


def open_fastq(path: str) -> TextIO:
    """
    Open a FASTQ file for reading as latin-1 text. `-` reads stdin.
    gzip input is recognised by its magic bytes rather than its extension.
    Raises OSError when the file cannot be opened.
    """
    # Positive invariant: path must be a non-empty string
    assert isinstance(path, str) and len(path) > 0, (  # noqa: PT018
        f"Path must be non-empty string, got: {path!r}"
    )
    logger.debug(f"Opening for read: {path}")

    if path == STDIN_PATH:
        raw = open(sys.stdin.fileno(), "rb", closefd=False)  # noqa: SIM115
        if raw.peek(len(GZIP_MAGIC)).startswith(GZIP_MAGIC):
            return io.TextIOWrapper(gzip.GzipFile(fileobj=raw), encoding=FASTQ_ENCODING)
        return io.TextIOWrapper(raw, encoding=FASTQ_ENCODING)

    raw = open(path, "rb")  # noqa: SIM115
    if raw.peek(len(GZIP_MAGIC)).startswith(GZIP_MAGIC):
        raw.close()
        logger.debug(f"Reading '{path}' as gzip")
        return gzip.open(path, "rt", encoding=FASTQ_ENCODING)
    return io.TextIOWrapper(raw, encoding=FASTQ_ENCODING)


def iter_records(handle: Iterable[str], source: str) -> Iterator[FastqRecord]:
    """
    Yield records from an open FASTQ text handle until it is exhausted.

    A malformed record ends the stream at that point; the records before it
    have already been yielded.
    """
    it = FastqGeneralIterator(handle)
    while True:
        try:
            title, sequence, quality = next(it)
        except StopIteration:
            return
        except ValueError as err:
            logger.warning(f"Stopped reading '{source}' at a malformed record: {err}")
            return
        yield FastqRecord(title, sequence, quality)


@contextmanager
def open_output(stream: TextIO) -> Iterator[TextIO]:
    """
    Write to `stream` through its byte buffer as latin-1, so the bytes of every
    record come out exactly as they were read. The buffer is left open.
    """
    buffer = getattr(stream, "buffer", None)
    if buffer is None:
        yield stream
        return

    stream.flush()
    sink = io.TextIOWrapper(buffer, encoding=FASTQ_ENCODING, newline="\n")
    try:
        yield sink
    finally:
        sink.flush()
        sink.detach()


def write_record(sink: TextIO, record: FastqRecord) -> None:
    sink.write(record.to_fastq())


# ------------------------------ CORE LOGIC --------------------------------- #


def trim_record(
    record: FastqRecord,
    span: MatchSpan,
    policy: TrimPolicy | None,
) -> FastqRecord:
    """
    Return a copy of `record` with sequence and qualities cut down to the range
    chosen by `policy` around `span`. The header is kept whole and the input
    record is never modified. With no policy the record itself is returned.
    """
    if policy is None:
        return record

    seq_len = len(record.sequence)

    # Positive invariant: span must lie within the sequence
    assert 0 <= span.start <= span.end <= seq_len, (
        f"Match span {span} out of bounds for '{record.name}' (length {seq_len})"
    )

    keep_start, keep_end = policy.keep_range(span, seq_len)
    new_seq = record.sequence[keep_start:keep_end]
    new_qual = record.quality[keep_start:keep_end]

    # Negative invariant: trimming must not desynchronise sequence and qualities
    assert len(new_qual) == len(new_seq), (
        f"Post-trim sequence/quality mismatch for '{record.name}': seq={len(new_seq)}, qual={len(new_qual)}"
    )

    logger.trace(
        f"Trimmed '{record.name}' to [{keep_start}, {keep_end}) with {policy.side.name} "
        f"(trim_match={policy.trim_match}), span={tuple(span)}",
    )
    return replace(record, sequence=new_seq, quality=new_qual)


def is_selected(span: MatchSpan | None, invert: bool) -> bool:  # noqa: FBT001
    """A record is selected when it matched, or when it did not and matching is inverted."""
    return (span is not None) != invert


def grep_stream(  # noqa: PLR0913
    records: Iterable[FastqRecord],
    matcher: PatternMatcher,
    config: GrepConfig,
    out: TextIO,
    mismatch_out: TextIO | None = None,
    stats: GrepStats | None = None,
) -> GrepStats:
    """
    Match every record in `records` and route it, in input order.

    - selected, count mode: tallied only
    - selected: trimmed per `config.trim` (when there is a span) and written to `out`
    - not selected: written unmodified to `mismatch_out`, or dropped without one

    Counters are accumulated into `stats` (a fresh GrepStats if not given),
    which is also returned. The count line itself is written by `grep_files`.
    """
    if stats is None:
        stats = GrepStats()

    for record in records:
        stats.records += 1
        if stats.records % DEBUG_EVERY == 0:
            logger.debug(f"Progress: {stats.summary()}")

        span = matcher.search(config.field.select(record))

        if not is_selected(span, config.invert):
            if mismatch_out is not None:
                write_record(mismatch_out, record)
                stats.mismatched += 1
            else:
                stats.dropped += 1
            continue

        stats.selected += 1
        if config.count:
            continue

        # Inverted selections have no span; trimming is never configured for them
        if span is not None and config.trim is not None:
            record = trim_record(record, span, config.trim)  # noqa: PLW2901
            stats.trimmed += 1
        write_record(out, record)

    return stats


def grep_files(
    paths: Sequence[str],
    matcher: PatternMatcher,
    config: GrepConfig,
    out: TextIO,
    mismatch_out: TextIO | None = None,
) -> GrepStats:
    """
    Run `grep_stream` over each input in order, sharing one set of counters.

    No paths means stdin. A file that cannot be opened is reported and
    skipped. In count mode the total number of selected records is written
    to `out` once, after the last input.
    """
    stats = GrepStats()
    for path in paths or [STDIN_PATH]:
        try:
            handle = open_fastq(path)
        except OSError as err:
            logger.error(f"No such file '{path}'.")
            logger.debug(f"Open failure for '{path}': {err}")
            stats.files_skipped += 1
            continue

        with handle:
            before = stats.records
            grep_stream(iter_records(handle, path), matcher, config, out, mismatch_out, stats)
        stats.files_read += 1
        logger.info(f"Read {stats.records - before} records from '{path}'")

    if config.count:
        out.write(f"{stats.selected}\n")

    logger.success(stats.summary())
    return stats


# --------------------------------- CLI ------------------------------------- #


class GrepArgumentParser(argparse.ArgumentParser):
    """ArgumentParser that exits with status 1 on usage errors, like the other checks."""

    def error(self, message: str) -> NoReturn:
        self.print_usage(sys.stderr)
        self.exit(1, f"{self.prog}: error: {message}\n")


def build_parser() -> argparse.ArgumentParser:
    """
    CLI:
      fastq-grep [OPTION]... PATTERN [FILE]...
      --verbose / -q : raise or lower log verbosity (mutually exclusive);
      -v is taken by --invert-match, so verbosity has only a long form.
    """
    p = GrepArgumentParser(
        prog=PROG_NAME,
        usage="%(prog)s [OPTION]... PATTERN [FILE]...",
        description=(
            "Search for PATTERN in the read sequences in each FILE or standard input.\n"
            "PATTERN is a case-insensitive Python regular expression."
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )

    p.add_argument("pattern", nargs="?", default=None, metavar="PATTERN", help="Pattern to search for")
    p.add_argument(
        "files",
        nargs="*",
        metavar="FILE",
        help="FASTQ inputs, optionally gzip-compressed ('-' or none for standard input)",
    )

    # Matching
    p.add_argument(
        "-i",
        "--id",
        action="store_true",
        help="Match the read id (by default, sequence is matched)",
    )
    p.add_argument(
        "-v",
        "--invert-match",
        action="store_true",
        help="Select nonmatching entries",
    )
    p.add_argument(
        "-m",
        "--mismatches",
        metavar="FILE",
        default=None,
        help="Output mismatching entries to the given file",
    )
    p.add_argument(
        "-c",
        "--count",
        action="store_true",
        help="Output only the number of matching sequences",
    )

    # Trimming
    trim_group = p.add_argument_group("Trimming")
    trim_group.add_argument(
        "-a",
        "--trim-after",
        action="store_true",
        help="Trim output after the match end",
    )
    trim_group.add_argument(
        "-b",
        "--trim-before",
        action="store_true",
        help="Trim output before the match start",
    )
    trim_group.add_argument(
        "-t",
        "--trim-match",
        action="store_true",
        help="Trim the match itself, regardless of trimming mode",
    )

    p.add_argument(
        "-V",
        "--version",
        action="version",
        version=f"%(prog)s {__version__}",
        help="Output version information and exit",
    )

    # Verbosity: --verbose (repeatable) or -q/-qq/-qqq (mutually exclusive)
    g = p.add_mutually_exclusive_group()
    g.add_argument(
        "--verbose",
        action="count",
        default=0,
        help="Increase log verbosity (repeat up to three times).",
    )
    g.add_argument(
        "-q",
        "--quiet",
        action="count",
        default=0,
        help="Decrease log verbosity (use up to -qqq).",
    )

    return p


def trim_policy_from_flags(
    trim_before: bool,  # noqa: FBT001
    trim_after: bool,  # noqa: FBT001
    trim_match: bool,  # noqa: FBT001
) -> TrimPolicy | None:
    """Collapse the -b/-a/-t flags into a single optional TrimPolicy."""
    if trim_before and trim_after:
        msg = "Specify -b or -a, not both."
        raise ConfigError(msg)
    if trim_before:
        return TrimPolicy(TrimSide.BEFORE, trim_match=trim_match)
    if trim_after:
        return TrimPolicy(TrimSide.AFTER, trim_match=trim_match)
    if trim_match:
        logger.warning("--trim-match has no effect without --trim-before or --trim-after.")
    return None


def config_from_args(args: argparse.Namespace) -> GrepConfig:
    """Validate parsed arguments and build the run configuration."""
    trim = trim_policy_from_flags(args.trim_before, args.trim_after, args.trim_match)
    return GrepConfig(
        field=SearchField.ID if args.id else SearchField.SEQUENCE,
        invert=bool(args.invert_match),
        count=bool(args.count),
        trim=trim,
    )


def main(argv: Sequence[str] | None = None) -> None:
    args = build_parser().parse_intermixed_args(argv)
    configure_logging(args.verbose, args.quiet)

    try:
        config = config_from_args(args)
        logger.debug(f"GrepConfig: {config}")
        if args.pattern is None:
            msg = "A pattern must be specified."
            raise ConfigError(msg)
        matcher = PatternMatcher.compile(args.pattern)
    except ConfigError as err:
        logger.error(str(err))
        sys.exit(1)

    with ExitStack() as stack:
        mismatch_out: TextIO | None = None
        if args.mismatches is not None:
            try:
                mismatch_out = stack.enter_context(
                    open(args.mismatches, "w", encoding=FASTQ_ENCODING, newline="\n")  # noqa: SIM115
                )
            except OSError as err:
                logger.error(f"Cannot open mismatch file '{args.mismatches}' for writing: {err.strerror}")
                sys.exit(1)

        out = stack.enter_context(open_output(sys.stdout))
        grep_files(args.files, matcher, config, out, mismatch_out)


if __name__ == "__main__":
    main()
