# /// script
# requires-python = ">=3.10"
# dependencies = [
#     "pytest",
# ]
# ///
"""
Pytest fixtures and configuration for fastq-grep testing.

This module provides shared fixtures for testing fastq_grep.py. It includes
utilities for writing small FASTQ files (plain and gzip-compressed) and
ready-made records and run configurations.
"""

import gzip
import sys
import tempfile
from collections.abc import Iterator
from pathlib import Path

import pytest

# Add bin directory to Python path so we can import the module under test
BIN_DIR = Path(__file__).parent.parent / "bin"
sys.path.insert(0, str(BIN_DIR))

# Now we can import the module we're testing
from fastq_grep import FastqRecord, GrepConfig, PatternMatcher


def fastq_text(records: list[FastqRecord]) -> str:
    """Render records exactly as the writer would."""
    return "".join(record.to_fastq() for record in records)


def write_fastq(path: Path, records: list[FastqRecord]) -> Path:
    """Write records to `path` byte for byte, gzip-compressed when the name ends in .gz."""
    data = fastq_text(records).encode("latin-1")
    if path.suffix == ".gz":
        with gzip.open(path, "wb") as f:
            f.write(data)
    else:
        path.write_bytes(data)
    return path


@pytest.fixture
def temp_dir() -> Iterator[Path]:
    """Create a temporary directory for test files."""
    with tempfile.TemporaryDirectory() as tmp_dir:
        yield Path(tmp_dir)


@pytest.fixture
def read1() -> FastqRecord:
    """The reference record: two copies of ACGT."""
    return FastqRecord(identifier="read1", sequence="ACGTACGT", quality="IIIIHHHH")


@pytest.fixture
def sample_records() -> list[FastqRecord]:
    """A handful of records with and without the GATTACA motif."""
    return [
        FastqRecord(identifier="r1", sequence="TTGATTACATT", quality="ABCDEFGHIJK"),
        FastqRecord(identifier="r2", sequence="CCCCCCCC", quality="########"),
        FastqRecord(identifier="r3 sample=x", sequence="gattacaGG", quality="IIIIIII55"),
        FastqRecord(identifier="r4", sequence="AAAA", quality="!!!!"),
    ]


@pytest.fixture
def sample_fastq(temp_dir: Path, sample_records: list[FastqRecord]) -> Path:
    """Plain FASTQ file holding `sample_records`."""
    return write_fastq(temp_dir / "sample.fastq", sample_records)


@pytest.fixture
def sample_fastq_gz(temp_dir: Path, sample_records: list[FastqRecord]) -> Path:
    """Gzip-compressed FASTQ file holding `sample_records`."""
    return write_fastq(temp_dir / "sample.fastq.gz", sample_records)


@pytest.fixture
def tagged_fastq_bytes() -> bytes:
    """samtools fastq -T style headers (tab-separated tags) and a non-ASCII byte."""
    return (
        b"@r0 ok\nTTTT\n+\nIIII\n"
        b"@r1\tBC:Z:AA\tRG:Z:lane1\nACGT\n+\nIIII\n"
        b"@r2 caf\xe9\nAC\xe9T\n+\nII\xe9I\n"
        b"@r3\nGGACGTGG\n+\nABCDEFGH\n"
    )


@pytest.fixture
def tagged_fastq(temp_dir: Path, tagged_fastq_bytes: bytes) -> Path:
    path = temp_dir / "tagged.fastq"
    path.write_bytes(tagged_fastq_bytes)
    return path


@pytest.fixture
def empty_fastq(temp_dir: Path) -> Path:
    """A FASTQ file without any records."""
    path = temp_dir / "empty.fastq"
    path.write_text("")
    return path


@pytest.fixture
def acgt_matcher() -> PatternMatcher:
    return PatternMatcher.compile("ACGT")


@pytest.fixture
def default_config() -> GrepConfig:
    """Plain selection: sequence field, no invert, no count, no trim."""
    return GrepConfig()


@pytest.fixture(autouse=True)
def configure_logging_for_tests() -> None:
    """Configure logging for tests to reduce noise."""
    # Remove existing handlers and set to WARNING level for tests
    from loguru import logger

    logger.remove()
    logger.add(sys.stderr, level="WARNING")
