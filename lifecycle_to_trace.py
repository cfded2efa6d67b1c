#!/usr/bin/env python3
"""
lifecycle_to_trace.py - Object lifecycle log to Jaeger trace converter

Reads a log file of constructor/destructor lines emitted by an instrumented
program and outputs a single trace in JSON format compatible with Jaeger.
Every matched constructor/destructor pair becomes a span, and the info lines
found between them become logs of the innermost open span.
"""

import re
import json
import sys
import gzip
import logging
import datetime
from enum import Enum
from typing import Dict, Iterable, Iterator, List, Optional, Tuple, Any
from dataclasses import dataclass, field


logger = logging.getLogger('lifecycle_to_trace')

CONSTRUCTOR_KEY = "constructor"
DESTRUCTOR_KEY = "destructor"

# Date and time fields are concatenated without a separator before parsing
TIMESTAMP_FORMAT = "%Y-%m-%d%H:%M:%S.%f"
TIMESTAMP_FORMAT_NO_FRACTION = "%Y-%m-%d%H:%M:%S"

EPOCH = datetime.datetime(1970, 1, 1, tzinfo=datetime.timezone.utc)

# date, time, pid, component, level
MIN_FIELDS = 5
# ... plus <func>_<file> and the constructor/destructor keyword
MIN_STRUCTURAL_FIELDS = 7

ROOT_OPERATION_NAME = "root"
DEFAULT_OUTPUT_FILE = "test.json"

USAGE = ("Usage: python3 lifecycle_to_trace.py <input-log-file> <pattern>... "
         "[--out=test.json] [--legacy-pids] [--debug]")


class LineKind(str, Enum):
    """Classification of a single log line."""
    CONSTRUCTOR = "constructor"
    DESTRUCTOR = "destructor"
    INFO = "info"


class ReferenceType(str, Enum):
    """Jaeger reference types."""
    CHILD_OF = "CHILD_OF"


class LogToTraceError(Exception):
    """Base class for all conversion failures."""


class InputUnavailableError(LogToTraceError):
    """The input cannot be opened or read, or holds no log lines."""


class LineError(LogToTraceError):
    """A single input line could not be turned into a record."""

    def __init__(self, message: str, line_number: Optional[int] = None, line: str = ""):
        self.line_number = line_number
        self.line = line
        if line_number is not None:
            message = f"line {line_number}: {message}"
        super().__init__(message)


class MalformedLineError(LineError):
    """A line has fewer fields than its kind requires."""


class TimestampParseError(LineError):
    """The date and time fields do not match TIMESTAMP_FORMAT."""


class UnbalancedStackError(LogToTraceError):
    """Destructors and constructors do not pair up."""


class SerializationError(LogToTraceError):
    """The assembled trace could not be encoded as JSON."""


@dataclass
class ParsedLine:
    """One classified log record."""
    timestamp: int
    kind: LineKind
    component: str
    level: str
    function_name: str = ""
    file_name: str = ""
    info_payload: str = ""
    span_id: Optional[str] = None
    # Indices into TraceBuilder.records of the info lines nested directly below
    children: List[int] = field(default_factory=list)
    line_number: Optional[int] = None

    @property
    def signature(self) -> str:
        return f"{self.function_name}_{self.file_name}"


@dataclass
class SpanLog:
    """A Jaeger span log entry built from one info line."""
    timestamp: int
    fields: List[Dict[str, str]] = field(default_factory=list)


@dataclass
class Span:
    """Represents one completed constructor/destructor pair."""
    trace_id: str
    span_id: str
    operation_name: str
    start_time: int
    duration: int
    process_id: str
    parent_span_id: Optional[str] = None
    logs: List[SpanLog] = field(default_factory=list)

    def to_jaeger_format(self) -> Dict[str, Any]:
        references = []
        if self.parent_span_id:
            references.append({
                "refType": ReferenceType.CHILD_OF.value,
                "traceID": self.trace_id,
                "spanID": self.parent_span_id,
            })
        return {
            "traceID": self.trace_id,
            "spanID": self.span_id,
            "operationName": self.operation_name,
            "references": references,
            "startTime": self.start_time,
            "duration": self.duration,
            "tags": [],
            "processID": self.process_id,
            "warnings": [],
            "logs": [
                {"timestamp": log.timestamp, "fields": list(log.fields)}
                for log in self.logs
            ],
        }


@dataclass
class Process:
    """A logical originator of spans."""
    service_name: str


@dataclass
class Trace:
    """All spans of one run plus the processes they belong to."""
    trace_id: str
    spans: List[Span] = field(default_factory=list)
    processes: Dict[str, Process] = field(default_factory=dict)
    warnings: List[str] = field(default_factory=list)

    def to_jaeger_format(self) -> Dict[str, Any]:
        """
        Convert the trace to the document served by Jaeger's query API.

        The root span comes first, followed by the other spans in the order
        their destructors were seen.
        """
        trace_data = {
            "traceID": self.trace_id,
            "spans": [span.to_jaeger_format() for span in self.spans],
            "processes": {
                process_id: {"serviceName": process.service_name}
                for process_id, process in self.processes.items()
            },
            "warnings": list(self.warnings),
        }
        return {"data": [trace_data], "total": 0, "limit": 0, "offset": 0, "errors": None}


class SpanIdGenerator:
    """Hands out span IDs for a single run.

    The counter is rendered as an 8 character, space padded decimal and the
    ASCII bytes of that string are hex encoded, so 1 becomes 2020202020202031.
    """

    def __init__(self, start: int = 1):
        self._next = start

    def next_id(self) -> str:
        span_id = f"{self._next:8d}".encode('ascii').hex()
        self._next += 1
        return span_id


def parse_timestamp(ts: str, line_number: Optional[int] = None, line: str = "") -> int:
    """Parse a concatenated date+time string into microseconds since epoch (UTC).

    Raises TimestampParseError instead of falling back to zero.
    """
    fmt = TIMESTAMP_FORMAT if '.' in ts else TIMESTAMP_FORMAT_NO_FRACTION
    try:
        dt = datetime.datetime.strptime(ts, fmt)
    except ValueError as e:
        raise TimestampParseError(f"cannot parse timestamp {ts!r}: {e}",
                                  line_number=line_number, line=line) from e
    dt = dt.replace(tzinfo=datetime.timezone.utc)
    return (dt - EPOCH) // datetime.timedelta(microseconds=1)


def split_signature(signature: str) -> Optional[Tuple[str, str]]:
    """Split '<func>_<file>' on the first underscore only."""
    function_name, sep, file_name = signature.partition('_')
    if not sep:
        return None
    return function_name, file_name


class LineParser:
    """Parser for log lines.

    Line layout (whitespace separated):
        <date> <time> <pid> <component> <level> <info text...>
        <date> <time> <pid> <component> <level> <func>_<file> constructor|destructor
    """

    def classify(self, parts: List[str]) -> LineKind:
        if parts and parts[-1] == DESTRUCTOR_KEY:
            return LineKind.DESTRUCTOR
        if parts and parts[-1] == CONSTRUCTOR_KEY:
            return LineKind.CONSTRUCTOR
        return LineKind.INFO

    def parse_line(self, line: str, line_number: Optional[int] = None) -> ParsedLine:
        """
        Parse a log line into a ParsedLine.
        Raises MalformedLineError or TimestampParseError, never returns None.
        """
        line = line.rstrip()
        parts = line.split()
        if len(parts) < MIN_FIELDS:
            raise MalformedLineError(
                f"expected at least {MIN_FIELDS} fields, got {len(parts)}",
                line_number=line_number, line=line)

        kind = self.classify(parts)
        if kind != LineKind.INFO and len(parts) < MIN_STRUCTURAL_FIELDS:
            raise MalformedLineError(
                f"{kind.value} line needs at least {MIN_STRUCTURAL_FIELDS} fields, got {len(parts)}",
                line_number=line_number, line=line)

        parsed = ParsedLine(
            timestamp=parse_timestamp(parts[0] + parts[1], line_number, line),
            kind=kind,
            component=parts[3],
            level=parts[4],
            line_number=line_number,
        )

        if kind == LineKind.INFO:
            parsed.info_payload = ' '.join(parts[5:])
        else:
            names = split_signature(parts[-2])
            if names is None:
                raise MalformedLineError(
                    f"signature {parts[-2]!r} is not of the form <func>_<file>",
                    line_number=line_number, line=line)
            parsed.function_name, parsed.file_name = names

        return parsed


class ProcessRegistry:
    """Assigns p<N> IDs to component names in the order they are first resolved."""

    def __init__(self):
        self._ids: Dict[str, str] = {}
        self.processes: Dict[str, Process] = {}

    def __contains__(self, name: str) -> bool:
        return name in self._ids

    def __len__(self) -> int:
        return len(self._ids)

    def resolve(self, name: str) -> str:
        """Get or create the process ID for a component name."""
        if name not in self._ids:
            process_id = f"p{len(self.processes) + 1}"
            self._ids[name] = process_id
            self.processes[process_id] = Process(service_name=name)
            logger.debug(f"Registered process {process_id} for {name}")
        return self._ids[name]


class TraceBuilder:
    """Builds a trace from parsed lifecycle records.

    Stack Machine Behavior:
    ----------------------
    All records are kept in an arena (self.records); the stack holds the arena
    indices of the constructor records that are still open, innermost last.
    A synthetic root record sits at the bottom and is never matched by input.

    - constructor: gets a fresh span ID and is pushed
    - destructor: pops the top record and emits a span for it; the new top
      becomes its CHILD_OF parent
    - info: attached as a child of the top record, later emitted as a span log

    Matching is purely positional, destructor names are not compared.
    """

    def __init__(self, id_generator: Optional[SpanIdGenerator] = None,
                 legacy_process_ids: bool = False):
        self.id_generator = id_generator or SpanIdGenerator()
        # Spans take the process ID current before their own component is registered
        self.legacy_process_ids = legacy_process_ids
        self.registry = ProcessRegistry()
        self.records: List[ParsedLine] = []
        self.stack: List[int] = []
        self.completed_spans: List[Span] = []
        self.root: Optional[ParsedLine] = None
        self._current_process_id = "p1"

    @property
    def trace_id(self) -> str:
        if self.root is None:
            raise LogToTraceError("trace has not been started")
        return self.root.span_id

    def start(self, first_timestamp: int):
        """Push the synthetic root record."""
        if self.root is not None:
            raise LogToTraceError("trace already started")
        self.root = ParsedLine(
            timestamp=first_timestamp,
            kind=LineKind.CONSTRUCTOR,
            component="",
            level="",
            function_name=ROOT_OPERATION_NAME,
            span_id=self.id_generator.next_id(),
        )
        self._push(self.root)
        logger.debug(f"Started trace {self.root.span_id} at {first_timestamp}")

    def _push(self, record: ParsedLine):
        self.records.append(record)
        self.stack.append(len(self.records) - 1)

    def _top(self) -> ParsedLine:
        if not self.stack:
            raise UnbalancedStackError("no open record on the stack")
        return self.records[self.stack[-1]]

    def process_line(self, record: ParsedLine):
        """Process one parsed record, in file order."""
        if self.root is None:
            self.start(record.timestamp)

        if record.kind == LineKind.CONSTRUCTOR:
            record.span_id = self.id_generator.next_id()
            self._push(record)
            logger.debug(f"Pushed {record.signature} span={record.span_id} depth={len(self.stack) - 1}")
        elif record.kind == LineKind.DESTRUCTOR:
            self._close(record)
        else:
            self.records.append(record)
            self._top().children.append(len(self.records) - 1)

    def _close(self, destructor: ParsedLine):
        """Pop the innermost open record and emit its span."""
        if len(self.stack) <= 1:
            where = f"line {destructor.line_number}: " if destructor.line_number is not None else ""
            raise UnbalancedStackError(
                f"{where}destructor for {destructor.signature} has no open constructor")

        opened = self.records[self.stack.pop()]
        parent = self._top()

        process_id = self._resolve_process(opened.component)
        span = Span(
            trace_id=self.trace_id,
            span_id=opened.span_id,
            operation_name=destructor.signature,
            start_time=opened.timestamp,
            duration=destructor.timestamp - opened.timestamp,
            process_id=process_id,
            parent_span_id=parent.span_id,
            logs=self._build_logs(opened),
        )
        self.completed_spans.append(span)
        logger.debug(f"Closed span {span.span_id} name={span.operation_name} "
                     f"duration={span.duration} parent={span.parent_span_id}")

    def _resolve_process(self, component: str) -> str:
        if not self.legacy_process_ids:
            return self.registry.resolve(component)
        # The span keeps the ID that was current before this component got registered
        process_id = self._current_process_id
        if component not in self.registry:
            self._current_process_id = self.registry.resolve(component)
        return process_id

    def _build_logs(self, record: ParsedLine) -> List[SpanLog]:
        logs = []
        for index in record.children:
            child = self.records[index]
            logs.append(SpanLog(
                timestamp=child.timestamp,
                fields=[{
                    "key": f"TRACE{child.level}",
                    "type": "string",
                    "value": child.info_payload,
                }],
            ))
        return logs

    def finalize(self) -> Trace:
        """Check that only the root is still open and assemble the trace."""
        if self.root is None:
            raise InputUnavailableError("no log lines to build a trace from")

        if len(self.stack) > 1:
            still_open = [self.records[i] for i in self.stack[1:]]
            names = ', '.join(
                f"{r.signature} (line {r.line_number})" if r.line_number is not None else r.signature
                for r in still_open)
            raise UnbalancedStackError(f"{len(still_open)} constructor(s) never destroyed: {names}")

        # Root duration follows the first completed span
        duration = self.completed_spans[0].duration if self.completed_spans else 0
        root_span = Span(
            trace_id=self.trace_id,
            span_id=self.root.span_id,
            operation_name=ROOT_OPERATION_NAME,
            start_time=self.root.timestamp,
            duration=duration,
            process_id="p1",
            logs=self._build_logs(self.root),
        )

        logger.debug(f"Finalized trace {self.trace_id} with {len(self.completed_spans) + 1} spans")
        return Trace(
            trace_id=self.trace_id,
            spans=[root_span] + self.completed_spans,
            processes=dict(self.registry.processes),
        )


def build_trace(records: Iterable[ParsedLine], legacy_process_ids: bool = False) -> Trace:
    """Run records through a fresh TraceBuilder and return the finished trace."""
    builder = TraceBuilder(legacy_process_ids=legacy_process_ids)
    for record in records:
        builder.process_line(record)
    return builder.finalize()


def serialize_trace(trace: Trace, indent: Optional[int] = 2) -> str:
    """Encode the trace document as JSON text."""
    try:
        return json.dumps(trace.to_jaeger_format(), indent=indent)
    except (TypeError, ValueError) as e:
        raise SerializationError(f"cannot encode trace {trace.trace_id}: {e}") from e


def read_log_lines(path: str) -> Iterator[Tuple[int, str]]:
    """Yield (line_number, line) pairs, skipping blank lines.

    '-' reads standard input; a .gz suffix is decompressed on the fly.
    Invalid UTF-8 in a file is replaced with U+FFFD rather than rejected.
    """
    try:
        if path == '-':
            f = sys.stdin
        elif path.endswith('.gz'):
            f = gzip.open(path, 'rt', encoding='utf-8', errors='replace')
        else:
            f = open(path, 'r', encoding='utf-8', errors='replace')
    except OSError as e:
        raise InputUnavailableError(f"cannot open {path}: {e}") from e

    try:
        for line_number, line in enumerate(f, start=1):
            line = line.rstrip('\n')
            if not line.strip():
                continue
            yield line_number, line
    except (OSError, EOFError, UnicodeDecodeError) as e:
        raise InputUnavailableError(f"cannot read {path}: {e}") from e
    finally:
        if f is not sys.stdin:
            f.close()


def parse_log_file(path: str, parser: Optional[LineParser] = None) -> List[ParsedLine]:
    """Read and parse every line of a log file."""
    parser = parser or LineParser()
    return [parser.parse_line(line, line_number) for line_number, line in read_log_lines(path)]


@dataclass
class Arguments:
    """Parsed command line arguments."""
    input_file: str
    patterns: List[str]
    output_file: str = DEFAULT_OUTPUT_FILE
    legacy_process_ids: bool = False
    debug: bool = False


def _usage_error(message: Optional[str] = None):
    if message:
        print(f"Error: {message}", file=sys.stderr)
    print(USAGE, file=sys.stderr)
    sys.exit(1)


def parse_arguments(argv: Optional[List[str]] = None) -> Arguments:
    """Parse command line arguments."""
    args = sys.argv[1:] if argv is None else list(argv)
    input_file: Optional[str] = None
    patterns: List[str] = []
    output_file = DEFAULT_OUTPUT_FILE
    legacy_process_ids = False
    debug = False
    positional: List[str] = []

    i = 0
    while i < len(args):
        a = args[i]
        if a.startswith('--out='):
            output_file = a.split('=', 1)[1]
        elif a.startswith('--file='):
            input_file = a.split('=', 1)[1]
        elif a.startswith('--regex='):
            patterns.append(a.split('=', 1)[1])
        elif a in ('--out', '-o', '--file', '-f', '--regex', '-r'):
            if i + 1 >= len(args):
                _usage_error(f"{a} requires a value")
            value = args[i + 1]
            if a in ('--out', '-o'):
                output_file = value
            elif a in ('--file', '-f'):
                input_file = value
            else:
                patterns.append(value)
            i += 1
        elif a == '--legacy-pids':
            legacy_process_ids = True
        elif a in ('--debug', '-d'):
            debug = True
        elif a.startswith('-') and a != '-':
            _usage_error(f"unknown option {a}")
        else:
            positional.append(a)
        i += 1

    if input_file is None and positional:
        input_file = positional.pop(0)
    patterns.extend(positional)

    if input_file is None:
        _usage_error("no input log file given")
    if not patterns:
        _usage_error("at least one matcher pattern is required")
    if not output_file:
        _usage_error("--out requires a filename")

    for pattern in patterns:
        try:
            re.compile(pattern)
        except re.error as e:
            _usage_error(f"invalid pattern {pattern!r}: {e}")

    return Arguments(input_file=input_file, patterns=patterns, output_file=output_file,
                     legacy_process_ids=legacy_process_ids, debug=debug)


def write_output(document: str, output_file: str):
    """Write the encoded document to a file, or to stdout for '-'."""
    if output_file == '-':
        sys.stdout.write(document)
        sys.stdout.write('\n')
        return
    with open(output_file, 'w', encoding='utf-8') as f:
        f.write(document)
        f.write('\n')


def convert(args: Arguments) -> Trace:
    """Parse, build and write the trace described by args."""
    logger.warning(f"Matcher patterns are accepted but not applied: {args.patterns}")
    records = parse_log_file(args.input_file)
    logger.debug(f"Parsed {len(records)} records from {args.input_file}")

    trace = build_trace(records, legacy_process_ids=args.legacy_process_ids)
    document = serialize_trace(trace)

    try:
        write_output(document, args.output_file)
    except (OSError, UnicodeEncodeError) as e:
        raise SerializationError(f"cannot write {args.output_file}: {e}") from e
    return trace


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point.

    Usage: python3 lifecycle_to_trace.py <input-log-file> <pattern>... [--out=test.json]
                                         [--legacy-pids] [--debug]

    The whole file is parsed and the trace assembled before anything is
    written, so a failing run never leaves a partial output file behind.
    """
    args = parse_arguments(argv)

    logging.basicConfig(level=logging.DEBUG if args.debug else logging.INFO)
    logger.setLevel(logging.DEBUG if args.debug else logging.INFO)
    if args.debug:
        print("Debug logging enabled", file=sys.stderr)

    try:
        trace = convert(args)
    except LogToTraceError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    summary = sys.stderr if args.output_file == '-' else sys.stdout
    print(f"Trace written to {args.output_file}", file=summary)
    print(f"Total spans: {len(trace.spans)}", file=summary)
    print(f"Total processes: {len(trace.processes)}", file=summary)
    return 0


if __name__ == "__main__":
    sys.exit(main())
