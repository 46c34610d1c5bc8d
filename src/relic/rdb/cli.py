from __future__ import annotations

import argparse
import logging
import multiprocessing
import os.path
import sys
from argparse import ArgumentParser, Namespace
from contextlib import contextmanager
from logging import Logger
from typing import BinaryIO, Iterator, Optional, Tuple

from fs import open_fs
from fs.errors import FSError
from relic.core.cli import CliPluginGroup, _SubParsersAction, CliPlugin, RelicArgParser
from relic.core.cli import get_file_type_validator
from relic.core.logmsg import BraceMessage

from relic.rdb.errors import FramingError, MagicMismatchError, RdbError, WriteError
from relic.rdb.loader import read_header
from relic.rdb.pipeline import DecodePipeline, DecoderConfig

_SUCCESS = 0
_FAILURE = 1


def _positive_int(value: str) -> int:
    try:
        result = int(value)
    except ValueError as e:
        raise argparse.ArgumentTypeError(f"'{value}' is not an integer") from e
    if result <= 0:
        raise argparse.ArgumentTypeError(f"'{value}' must be a positive integer")
    return result


@contextmanager
def _open_input(path: Optional[str]) -> Iterator[Tuple[BinaryIO, Optional[int]]]:
    if not path:
        yield sys.stdin.buffer, None
        return
    directory, name = os.path.split(os.path.abspath(path))
    with open_fs(directory) as osfs:
        try:
            size = osfs.getsize(name)
            handle = osfs.openbin(name, "r")
        except FSError as e:
            raise FramingError(f"Cannot open '{path}': {e}") from e
        with handle:
            yield handle, size


@contextmanager
def _open_output(path: Optional[str]) -> Iterator[BinaryIO]:
    if not path:
        yield sys.stdout.buffer
        return
    directory, name = os.path.split(os.path.abspath(path))
    try:
        osfs = open_fs(directory, writeable=True, create=True)
    except FSError as e:
        raise WriteError(f"Cannot create '{directory}': {e}") from e
    with osfs:
        try:
            handle = osfs.openbin(name, "w")
        except FSError as e:
            raise WriteError(f"Cannot open '{path}': {e}") from e
        with handle:
            yield handle


@contextmanager
def _status_logger(logger: Logger, to_stderr: bool) -> Iterator[Logger]:
    """Yield the logger for progress and status lines.

    When stdout carries the decoded lines, every log record must go to stderr
    instead; the yielded logger then has its own stderr handler and does not
    propagate to the caller's handlers.
    """
    if not to_stderr:
        yield logger
        return
    status = logging.getLogger(f"{logger.name}.rdb.stderr")
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter("%(message)s"))
    status.addHandler(handler)
    status.setLevel(logger.getEffectiveLevel())
    status.propagate = False
    try:
        yield status
    finally:
        status.removeHandler(handler)
        status.propagate = True


class RelicRdbCli(CliPluginGroup):
    GROUP = "relic.cli.rdb"

    def _create_parser(
        self, command_group: Optional[_SubParsersAction] = None
    ) -> ArgumentParser:
        name = "rdb"
        if command_group is None:
            return RelicArgParser(name)
        return command_group.add_parser(name)


class RelicRdbDecodeCli(CliPlugin):
    def _create_parser(
        self, command_group: Optional[_SubParsersAction] = None
    ) -> ArgumentParser:
        parser: ArgumentParser
        desc = """Decode an RDB dump into line-delimited JSON; one line per string, list item, hash field, set member or sorted set member.
            Reads from stdin and writes to stdout unless '--input'/'--output' are given."""
        if command_group is None:
            parser = RelicArgParser("decode", description=desc)
        else:
            parser = command_group.add_parser("decode", description=desc)

        parser.add_argument(
            "-i",
            "--input",
            type=get_file_type_validator(exists=True),
            help="Source RDB File (default: stdin)",
            default=None,
        )
        parser.add_argument(
            "-o",
            "--output",
            type=str,
            help="Output File (default: stdout)",
            default=None,
        )
        parser.add_argument(
            "-n",
            "--parallel",
            type=_positive_int,
            help="Number of decode workers (default: CPU count - 1)",
            default=max(1, multiprocessing.cpu_count() - 1),
        )
        parser.add_argument(
            "-v",
            "--verbose",
            help="Log pipeline internals",
            action="store_true",
            default=False,
        )

        return parser

    def command(self, ns: Namespace, *, logger: Logger) -> Optional[int]:
        infile: Optional[str] = ns.input
        outfile: Optional[str] = ns.output
        parallel: int = ns.parallel
        verbose: bool = ns.verbose

        with _status_logger(logger, to_stderr=not outfile) as status:
            status.info(
                BraceMessage(
                    "decode from '{0}' to '{1}'",
                    infile or "/dev/stdin",
                    outfile or "/dev/stdout",
                )
            )
            config = DecoderConfig(parallel=parallel, logger=status, verbose=verbose)
            try:
                with _open_input(infile) as (source, size), _open_output(outfile) as sink:
                    DecodePipeline(config).run(source, sink, size)
            except RdbError as e:
                status.error(BraceMessage("decode failed: {0}", e))
                return _FAILURE
        return _SUCCESS


class RelicRdbVersionCli(CliPlugin):
    def _create_parser(
        self, command_group: Optional[_SubParsersAction] = None
    ) -> ArgumentParser:
        parser: ArgumentParser
        if command_group is None:
            parser = RelicArgParser("version")
        else:
            parser = command_group.add_parser("version")

        parser.add_argument(
            "rdb",
            type=get_file_type_validator(exists=True),
            help="RDB File",
        )

        return parser

    def command(self, ns: Namespace, *, logger: logging.Logger) -> Optional[int]:
        rdb_file: str = ns.rdb
        logger.info("RDB Version")
        try:
            with open(rdb_file, "rb") as rdb:
                version = read_header(rdb)
        except MagicMismatchError:
            logger.warning("File is not an RDB")
        except FramingError as e:
            logger.warning(str(e))
        else:
            logger.info(f"RDB Version {version}")
        return None
