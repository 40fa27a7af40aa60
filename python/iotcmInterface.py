# -*- coding: utf8 -*-
"""Classes to handle differences in the Agda IOTCM interface across versions
and provide a uniform interface.

Commands are sent to `agda --interaction` as single lines of the form
IOTCM "<file>" <level> <highlighting method> ( <command> <args> )
and Agda replies with Emacs Lisp S-expressions, one per line.
"""

import re
from abc import ABCMeta, abstractmethod
from enum import Enum
from typing import (
    Any,
    Callable,
    Iterable,
    Iterator,
    List,
    NamedTuple,
    Optional,
    Tuple,
    Type,
    Union,
)

Version = Tuple[int, int, int, int]

Position = NamedTuple(
    "Position",
    [("offset", int), ("line", int), ("col", int)],
)
Goal = NamedTuple(
    "Goal",
    [("index", int), ("content", str), ("start", Position), ("stop", Position)],
)


class Level(Enum):
    """How much highlighting information Agda should send back."""

    NONE = "None"
    NON_INTERACTIVE = "NonInteractive"
    INTERACTIVE = "Interactive"


class HighlightingMethod(Enum):
    """Whether highlighting is sent over stdout or through temporary files."""

    DIRECT = "Direct"
    INDIRECT = "Indirect"


class Normalization(Enum):
    """How far Agda should normalise the types it displays."""

    SIMPLIFIED = "Simplified"
    INSTANTIATED = "Instantiated"
    NORMALISED = "Normalised"


# Requests #
Load = NamedTuple("Load", [])
Auto = NamedTuple("Auto", [("goal", Goal)])
InferType = NamedTuple(
    "InferType",
    [("normalization", Normalization), ("expr", str), ("goal", Goal)],
)
GoalType = NamedTuple(
    "GoalType",
    [("normalization", Normalization), ("goal", Goal)],
)
Request = Union[Load, Auto, InferType, GoalType]

# Responses #
Response = NamedTuple("Response", [("kind", str), ("args", List[Any])])

RangeBuilder = Callable[[Goal, str, bool], str]


class ParseFailure(Exception):
    """An exception for when Agda sends something that is not a response."""

    def __init__(self, line: str, reason: str) -> None:
        super().__init__(f"Failed to parse '{line}': {reason}")
        self.line = line


# Agda Response Types #
class Ok:
    """A response representing success."""

    def __init__(self, val: Any, msg: str = "") -> None:
        """Initialize values."""
        self.val = val
        self.msg = msg


class Err:
    """A response representing failure."""

    def __init__(self, err: Exception) -> None:
        """Initialize values."""
        self.err = err
        self.msg = str(err)


Result = Union[Ok, Err]


# Helpers #
def unexpected(expected: Iterable[Any], got: Any) -> TypeError:
    """Return an exception with a message showing what was expected."""
    expect = " or ".join(map(str, expected))
    return TypeError(f"Expected {expect}, but got {str(got)}")


ESCAPES = {"n": "\n", "t": "\t"}


def quote(s: str) -> str:
    """Wrap 's' in double quotes as a Haskell string literal."""
    escaped = s.replace("\\", "\\\\").replace('"', '\\"').replace("\n", "\\n")
    return f'"{escaped}"'


def _unquote(s: str) -> str:
    """Undo the escaping of an Emacs Lisp string literal."""
    return re.sub(r"\\(.)", lambda m: ESCAPES.get(m.group(1), m.group(1)), s)


def haskell_range(goal: Goal, filepath: str, since_2_5_1: bool) -> str:
    """Build the Haskell expression for the range of 'goal'."""
    path = f"(Just (mkAbsolute {quote(filepath)}))"
    start, stop = goal.start, goal.stop

    if since_2_5_1:
        return (
            f"(intervalsToRange {path} "
            f"[Interval (Pn () {start.offset} {start.line} {start.col}) "
            f"(Pn () {stop.offset} {stop.line} {stop.col})])"
        )
    return (
        f"(Range [Interval (Pn {path} {start.offset} {start.line} {start.col}) "
        f"(Pn {path} {stop.offset} {stop.line} {stop.col})])"
    )


# Response Parsing #
SEXPR_TOKEN_RE = re.compile(
    r"""\s*(?:(?P<open>\()|(?P<close>\))|(?P<quote>')|"(?P<str>(?:[^"\\]|\\.)*)"|(?P<atom>[^\s()"']+))""",
    flags=re.DOTALL,
)


def _tokenize(data: str) -> Iterator[Tuple[str, str]]:
    """Split an S-expression into (kind, text) tokens."""
    pos = 0
    data = data.rstrip()
    while pos < len(data):
        match = SEXPR_TOKEN_RE.match(data, pos)
        if match is None:
            raise ValueError(f"unexpected character at {pos}")
        pos = match.end()
        kind = match.lastgroup
        assert kind is not None
        yield kind, match.group(kind)


def parse_sexpr(data: str) -> Any:
    """Parse one S-expression into nested lists of strings.

    Atoms and string literals both become str. A quote (') is dropped since
    '(a b) and (a b) carry the same data for our purposes.
    """
    stack: List[List[Any]] = [[]]
    for kind, text in _tokenize(data):
        if kind == "open":
            stack.append([])
        elif kind == "close":
            if len(stack) == 1:
                raise ValueError("unbalanced ')'")
            done = stack.pop()
            stack[-1].append(done)
        elif kind == "str":
            stack[-1].append(_unquote(text))
        elif kind == "atom":
            stack[-1].append(text)

    if len(stack) != 1:
        raise ValueError("unbalanced '('")
    top = stack[0]
    if len(top) != 1:
        raise ValueError(f"expected one expression, found {len(top)}")
    return top[0]


def parse_response(line: str) -> Response:
    """Parse a line of Agda output into a Response."""
    try:
        sexpr = parse_sexpr(line)
    except ValueError as e:
        raise ParseFailure(line, str(e)) from e

    # Strip the priority wrapper: ((last . n) . (response ...))
    if (
        isinstance(sexpr, list)
        and len(sexpr) == 3
        and isinstance(sexpr[0], list)
        and sexpr[0][:1] == ["last"]
        and sexpr[1] == "."
    ):
        sexpr = sexpr[2]

    if not isinstance(sexpr, list) or sexpr == [] or not isinstance(sexpr[0], str):
        raise ParseFailure(line, "not a response")
    return Response(sexpr[0], sexpr[1:])


class IOTCMInterfaceBase(metaclass=ABCMeta):
    """Provide methods common to all IOTCM interface versions."""

    def __init__(self, version: Version, str_version: str) -> None:
        """Initialize version-dependent settings."""
        self.version = version
        self.str_version = str_version

        # Which range syntax to use for goals
        self.since_2_5_1 = False

    def iotcm(
        self,
        filepath: str,
        highlighting_method: HighlightingMethod,
        cmd: str,
        level: Level = Level.NON_INTERACTIVE,
    ) -> str:
        """Wrap 'cmd' in an IOTCM envelope."""
        return (
            f"IOTCM {quote(filepath)} {level.value} "
            f"{highlighting_method.value} ( {cmd} )"
        )

    # Agda Commands #
    @abstractmethod
    def load(self, filepath: str, library_path: Iterable[str]) -> str:
        """Create a command to load and type check a file."""

    @abstractmethod
    def auto(self, goal: Goal, filepath: str, build_range: RangeBuilder) -> str:
        """Create a command to search for a solution to a goal."""

    def infer_type(
        self,
        normalization: Normalization,
        expr: str,
        goal: Goal,
    ) -> str:
        """Create a command to infer the type of an expression in a goal."""
        return f"Cmd_infer {normalization.value} {goal.index} noRange {quote(expr)}"

    def goal_type(self, normalization: Normalization, goal: Goal) -> str:
        """Create a command to show the type of a goal."""
        return f'Cmd_goal_type {normalization.value} {goal.index} noRange ""'

    def encode(
        self,
        filepath: str,
        library_path: Iterable[str],
        highlighting_method: HighlightingMethod,
        request: Request,
        build_range: RangeBuilder = haskell_range,
    ) -> str:
        """Encode 'request' as a line for `agda --interaction`."""
        if isinstance(request, Load):
            cmd = self.load(filepath, library_path)
        elif isinstance(request, Auto):
            cmd = self.auto(request.goal, filepath, build_range)
        elif isinstance(request, InferType):
            cmd = self.infer_type(request.normalization, request.expr, request.goal)
        elif isinstance(request, GoalType):
            cmd = self.goal_type(request.normalization, request.goal)
        else:
            raise unexpected(("Load", "Auto", "InferType", "GoalType"), request)
        return self.iotcm(filepath, highlighting_method, cmd)


class IOTCMInterface24(IOTCMInterfaceBase):
    """The version 2.4.* IOTCM interface."""

    def load(self, filepath: str, library_path: Iterable[str]) -> str:
        """Cmd_load (file : string) (include_dirs : [string])"""
        # The current directory is always searched
        paths = ", ".join(quote(path) for path in (".", *library_path))
        return f"Cmd_load {quote(filepath)} [{paths}]"

    def auto(self, goal: Goal, filepath: str, build_range: RangeBuilder) -> str:
        """Cmd_auto (goal : int) (range : Range) (content : string)"""
        return self._auto("Cmd_auto", goal, filepath, build_range)

    def _auto(
        self,
        cmd: str,
        goal: Goal,
        filepath: str,
        build_range: RangeBuilder,
    ) -> str:
        rng = build_range(goal, filepath, self.since_2_5_1)
        return f"{cmd} {goal.index} {rng} {quote(goal.content)}"


class IOTCMInterface250(IOTCMInterface24):
    """The version 2.5.0 IOTCM interface."""

    def load(self, filepath: str, library_path: Iterable[str]) -> str:
        """Cmd_load (file : string) []

        Library paths are read from .agda-lib files instead.
        """
        return f"Cmd_load {quote(filepath)} []"


class IOTCMInterface251(IOTCMInterface250):
    """The version 2.5.1 through 2.6.0 IOTCM interface."""

    def __init__(self, version: Version, str_version: str) -> None:
        """Use `intervalsToRange` for ranges."""
        super().__init__(version, str_version)
        self.since_2_5_1 = True


class IOTCMInterface2601(IOTCMInterface251):
    """The version 2.6.0.1+ IOTCM interface."""

    def auto(self, goal: Goal, filepath: str, build_range: RangeBuilder) -> str:
        """Cmd_autoOne (goal : int) (range : Range) (content : string)"""
        return self._auto("Cmd_autoOne", goal, filepath, build_range)


IOTCMInterfaces: Tuple[Tuple[Version, Version, Type[IOTCMInterfaceBase]], ...] = (
    ((0, 0, 0, 0), (2, 5, 0, 0), IOTCMInterface24),
    ((2, 5, 0, 0), (2, 5, 1, 0), IOTCMInterface250),
    ((2, 5, 1, 0), (2, 6, 0, 1), IOTCMInterface251),
    ((2, 6, 0, 1), (3, 0, 0, 0), IOTCMInterface2601),
)

IOTCMInterfaceLatest = IOTCMInterfaces[-1][2]


def parse_version(version: str) -> Version:
    """Parse a version string into a 4-tuple."""
    match = re.fullmatch(r"(\d+(?:\.\d+){0,3})(?:[-+~]\S*)?", version)
    if match is None:
        raise ValueError(f"Invalid version: {version}")
    parts = tuple(int(part) for part in match.group(1).split("."))
    if len(parts) < 2:
        raise ValueError(f"Invalid version: {version}")
    padded = parts + (0,) * (4 - len(parts))
    return (padded[0], padded[1], padded[2], padded[3])


def IOTCMInterface(str_version: str) -> IOTCMInterfaceBase:
    """Return the appropriate IOTCMInterface class for the given version."""
    version = parse_version(str_version)
    for minVer, maxVer, iotcmInt in IOTCMInterfaces:
        if minVer <= version < maxVer:
            return iotcmInt(version, str_version)
    return IOTCMInterfaceLatest(version, str_version)


def encode(
    version: str,
    filepath: str,
    library_path: Iterable[str],
    highlighting_method: HighlightingMethod,
    request: Request,
    build_range: Optional[RangeBuilder] = None,
) -> str:
    """Encode 'request' for an Agda process reporting 'version'."""
    return IOTCMInterface(version).encode(
        filepath,
        library_path,
        highlighting_method,
        request,
        build_range if build_range is not None else haskell_range,
    )
