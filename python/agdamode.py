# -*- coding: utf8 -*-
"""Classes and functions for running Agda mode tasks and managing sessions."""

import asyncio
import logging
from abc import ABCMeta, abstractmethod
from collections import deque
from enum import Enum
from functools import partial
from typing import (
    TYPE_CHECKING,
    Any,
    Awaitable,
    Callable,
    Deque,
    Dict,
    Iterable,
    List,
    Mapping,
    NamedTuple,
    Optional,
    Sequence,
    Union,
    cast,
)

import agda as AG
import iotcmInterface as IT
from runner import Runner

if TYPE_CHECKING:
    # Some types are only subscriptable during type checking.
    from typing_extensions import TypedDict

    AgdaOptions = TypedDict(
        "AgdaOptions",
        {
            "agda_path": str,
            "library_path": str,
            "highlighting_method": str,
        },
    )
else:
    AgdaOptions = Mapping[str, Any]

DEFAULT_OPTIONS: Dict[str, str] = {
    "agda_path": "",
    "library_path": "",
    "highlighting_method": IT.HighlightingMethod.DIRECT.value,
}


def library_paths(opts: AgdaOptions) -> List[str]:
    """Split the comma-separated library path option."""
    return [path.strip() for path in opts["library_path"].split(",") if path.strip()]


# Panel #
class HeaderKind(Enum):
    """The style of a panel header."""

    PLAIN = "plain"
    SUCCESS = "success"
    WARNING = "warning"
    ERROR = "error"


Header = NamedTuple("Header", [("kind", HeaderKind), ("text", str)])
Display = NamedTuple("Display", [("header", Header), ("body", str)])
ViewRequest = Display

Destroyed = NamedTuple("Destroyed", [])
ViewResponse = Destroyed

# Commands #
Load = NamedTuple("Load", [])
Quit = NamedTuple("Quit", [])
NextGoal = NamedTuple("NextGoal", [])
PreviousGoal = NamedTuple("PreviousGoal", [])
Auto = NamedTuple("Auto", [])
InferType = NamedTuple("InferType", [("normalization", IT.Normalization)])
GoalType = NamedTuple("GoalType", [("normalization", IT.Normalization)])
FromView = NamedTuple("FromView", [("response", ViewResponse)])
Command = Union[Load, Quit, NextGoal, PreviousGoal, Auto, InferType, GoalType, FromView]

# Goal Actions #
Next = NamedTuple("Next", [])
Previous = NamedTuple("Previous", [])
Pointed = NamedTuple(
    "Pointed",
    [
        ("on_goal", Callable[[IT.Goal], List["Task"]]),
        ("otherwise", List["Task"]),
    ],
)
SetGoals = NamedTuple("SetGoals", [("indices", List[int])])
GoalAction = Union[Next, Previous, Pointed, SetGoals]

# Tasks #
Terminate = NamedTuple("Terminate", [])
WithState = NamedTuple(
    "WithState",
    [("callback", Callable[["State"], Awaitable[List["Task"]]])],
)
Goal = NamedTuple("Goal", [("action", GoalAction)])
SendRequest = NamedTuple("SendRequest", [("request", IT.Request)])
ViewReq = NamedTuple("ViewReq", [("request", ViewRequest)])
ViewRes = NamedTuple("ViewRes", [("response", ViewResponse)])
Error = NamedTuple("Error", [("err", Exception)])
Debug = NamedTuple("Debug", [("message", str)])
Task = Union[
    Terminate,
    WithState,
    Goal,
    SendRequest,
    ViewReq,
    ViewRes,
    Error,
    Debug,
]

Handlers = NamedTuple(
    "Handlers",
    [
        ("command", Callable[[Command], List[Task]]),
        ("response", Callable[[IT.Response], List[Task]]),
        ("error", Callable[[Exception], List[Task]]),
        ("goal", Callable[[GoalAction], List[Task]]),
        ("view", Callable[[ViewResponse], List[Task]]),
    ],
)
Establish = Callable[[Optional[str], logging.Logger], Awaitable[IT.Result]]


# Editor Collaborators #
class Editor(metaclass=ABCMeta):
    """The parts of the editor that Agda mode reads and moves."""

    def __init__(self, filepath: str) -> None:
        self.filepath = filepath

    @abstractmethod
    def cursor(self) -> int:
        """Return the offset of the cursor."""

    @abstractmethod
    def set_cursor(self, offset: int) -> None:
        """Move the cursor to 'offset'."""

    @abstractmethod
    def goals(self, indices: Sequence[int]) -> List[IT.Goal]:
        """Locate the holes numbered 'indices' in the buffer."""


class View(metaclass=ABCMeta):
    """The panel that displays Agda's messages."""

    @abstractmethod
    async def send(self, request: ViewRequest) -> None:
        """Show 'request' in the panel."""


# Session State #
class State:
    """Everything belonging to one editor session."""

    def __init__(
        self,
        editor: Editor,
        view: View,
        opts: Optional[Mapping[str, str]] = None,
        handlers: Optional[Handlers] = None,
        establish: Optional[Establish] = None,
    ) -> None:
        """Initialize variables.

        editor - The buffer being checked
        view - The panel
        opts - Agda options (see DEFAULT_OPTIONS)
        handlers - Turn commands, responses, errors, goal actions, and view
                   responses into tasks
        establish - Launch Agda, only called when there is no live connection
        connection - The Agda process, created on the first request
        goals - The holes Agda reported for the last load
        runner - The command queue of the Dispatcher
        """
        self.editor = editor
        self.view = view
        self.opts = cast(AgdaOptions, {**DEFAULT_OPTIONS, **(opts or {})})
        self.handlers = handlers if handlers is not None else DEFAULT_HANDLERS
        self.establish: Establish = (
            establish if establish is not None else AG.Connection.establish
        )
        self.connection: Optional[AG.Connection] = None
        self.goals: List[IT.Goal] = []
        self.runner: Optional[Runner[Command]] = None

        # Debugging, shared with the Connection and every Runner
        self.debug_log = AG.DebugLog(str(id(self)))
        self.logger = self.debug_log.logger

    async def connect(self) -> IT.Result:
        """Return the live connection, launching Agda if needed."""
        if self.connection is not None:
            if self.connection.running():
                return IT.Ok(self.connection)
            await self.connection.stop()
            self.connection = None

        result = await self.establish(self.opts["agda_path"] or None, self.logger)
        if isinstance(result, IT.Ok):
            self.connection = result.val
        return result

    async def send_request(self, request: IT.Request) -> IT.Result:
        """Encode 'request' and send it to Agda."""
        result = await self.connect()
        if isinstance(result, IT.Err):
            return result

        connection = result.val
        cmd = IT.encode(
            connection.version,
            self.editor.filepath,
            library_paths(self.opts),
            IT.HighlightingMethod(self.opts["highlighting_method"]),
            request,
        )
        try:
            connection.send(cmd)
        except AG.ConnectionFailure as e:
            return IT.Err(e)
        return result

    async def send_request_to_view(self, request: ViewRequest) -> None:
        """Forward 'request' to the panel."""
        await self.view.send(request)

    async def destroy(self) -> None:
        """Stop Agda and release the session's resources."""
        self.logger.debug("destroy")
        if self.connection is not None:
            await self.connection.stop()
            self.connection = None
        self.runner = None
        self.goals = []

        self.debug_log.disable()

    def toggle_debug(self) -> Optional[str]:
        """Enable or disable logging of debug messages.

        Returns the name of the log file when logging was enabled.
        """
        return self.debug_log.toggle()


# Task Interpreter #
async def run_tasks(state: State, tasks: Iterable[Task]) -> None:
    """Run 'tasks' one after another, each to completion."""
    for task in tasks:
        await run_task(state, task)


async def run_task(state: State, task: Task) -> None:
    """Run a single task and everything it leads to."""
    if isinstance(task, Terminate):
        await state.destroy()
    elif isinstance(task, WithState):
        await run_tasks(state, await task.callback(state))
    elif isinstance(task, Goal):
        await run_tasks(state, state.handlers.goal(task.action))
    elif isinstance(task, SendRequest):
        # Anything derived from this request is handled by send_requests
        await send_requests(state, [task.request])
    elif isinstance(task, ViewReq):
        await state.send_request_to_view(task.request)
    elif isinstance(task, ViewRes):
        await run_tasks(state, state.handlers.view(task.response))
    elif isinstance(task, Error):
        await run_tasks(state, state.handlers.error(task.err))
    elif isinstance(task, Debug):
        state.logger.debug("debug: %s", task.message)
        await run_tasks(state, [display(HeaderKind.WARNING, "Debug", task.message)])
    else:
        raise IT.unexpected(
            (
                "Terminate",
                "WithState",
                "Goal",
                "SendRequest",
                "ViewReq",
                "ViewRes",
                "Error",
                "Debug",
            ),
            task,
        )


# Request Round Trips #
async def send_request(state: State, request: IT.Request) -> List[IT.Request]:
    """Send 'request' and run the tasks produced by Agda's responses.

    Requests found among those tasks are not sent right away. They are
    returned, in the order they were seen, once every response has been
    handled.
    """
    state.logger.debug("send_request: %s", request)
    result = await state.send_request(request)
    if isinstance(result, IT.Err):
        # Nothing was sent, so there are no responses to wait for
        await run_tasks(state, state.handlers.error(result.err))
        return []

    connection = result.val
    derived: List[IT.Request] = []

    async def execute(task: Task) -> None:
        await run_task(state, task)
        # A Terminate stopped Agda, so no more responses will arrive
        if state.connection is not connection:
            runner.terminate()

    runner: Runner[Task] = Runner(execute, state.logger)

    def on_event(event: AG.Event) -> None:
        try:
            if isinstance(event, IT.Err):
                runner.push_many(state.handlers.error(event.err))
                runner.terminate()
            elif event.val is AG.STREAM_END:
                runner.terminate()
            else:
                tasks = []
                for task in state.handlers.response(event.val):
                    if isinstance(task, SendRequest):
                        derived.append(task.request)
                    else:
                        tasks.append(task)
                runner.push_many(tasks)
        except Exception as e:  # pylint: disable=broad-except
            state.logger.exception("Failed to handle %r", event)
            # Report through the runner so a failing error handler is logged too
            runner.push(Error(e))
            runner.terminate()

    with AG.listen(connection.emitter, on_event):
        await asyncio.wrap_future(runner.terminated)

    if state.connection is not connection:
        # The session was torn down, so nothing follows from this request
        return []
    return derived


async def send_requests(state: State, requests: Iterable[IT.Request]) -> None:
    """Send 'requests' one at a time.

    The requests derived from a request are sent before the ones that were
    already waiting behind it.
    """
    queue: Deque[IT.Request] = deque(requests)
    while queue:
        derived = await send_request(state, queue.popleft())
        queue.extendleft(reversed(derived))


# Command Dispatch #
class Dispatcher:
    """Run editor commands one at a time."""

    def __init__(self, state: State) -> None:
        self.state = state
        self.runner: Runner[Command] = Runner(self.execute, state.logger)
        state.runner = self.runner

    async def execute(self, command: Command) -> None:
        """Turn 'command' into tasks and run them."""
        self.state.logger.debug("command: %s", command)
        await run_tasks(self.state, self.state.handlers.command(command))

    def dispatch(self, command: Command) -> None:
        """Queue 'command' without waiting for it."""
        self.runner.push(command)

    async def destroy(self) -> None:
        """Wait until every queued command has finished."""
        await self.runner.terminate()


# Default Handlers #
def display(kind: HeaderKind, header: str, body: str = "") -> Task:
    """A task that shows a message in the panel."""
    return ViewReq(Display(Header(kind, header), body))


OUT_OF_GOAL = [
    display(HeaderKind.ERROR, "Out of goal", "Please place the cursor in a goal")
]

# Agda's info headers that deserve a special style
INFO_HEADERS = {
    "*Error*": HeaderKind.ERROR,
    "*All Errors*": HeaderKind.ERROR,
    "*All Warnings*": HeaderKind.WARNING,
    "*All Done*": HeaderKind.SUCCESS,
}

IGNORED_RESPONSES = {
    "agda2-status-action",
    "agda2-maybe-goto",
    "agda2-verbose",
}


def handle_command(command: Command) -> List[Task]:
    """Decide what to do for an editor command."""
    # pylint: disable=no-else-return
    if isinstance(command, Load):
        return [display(HeaderKind.PLAIN, "Loading ..."), SendRequest(IT.Load())]
    elif isinstance(command, Quit):
        return [Terminate()]
    elif isinstance(command, NextGoal):
        return [Goal(Next())]
    elif isinstance(command, PreviousGoal):
        return [Goal(Previous())]
    elif isinstance(command, Auto):
        return [Goal(Pointed(lambda goal: [SendRequest(IT.Auto(goal))], OUT_OF_GOAL))]
    elif isinstance(command, InferType):
        normalization = command.normalization

        def infer(goal: IT.Goal) -> List[Task]:
            expr = goal.content.strip()
            if expr == "":
                return [
                    display(
                        HeaderKind.ERROR,
                        "Inference Error",
                        "Please type an expression in the goal",
                    )
                ]
            return [SendRequest(IT.InferType(normalization, expr, goal))]

        return [Goal(Pointed(infer, OUT_OF_GOAL))]
    elif isinstance(command, GoalType):
        normalization = command.normalization
        return [
            Goal(
                Pointed(
                    lambda goal: [SendRequest(IT.GoalType(normalization, goal))],
                    OUT_OF_GOAL,
                )
            )
        ]
    elif isinstance(command, FromView):
        return [ViewRes(command.response)]
    raise IT.unexpected(
        (
            "Load",
            "Quit",
            "NextGoal",
            "PreviousGoal",
            "Auto",
            "InferType",
            "GoalType",
            "FromView",
        ),
        command,
    )


async def _jump(state: State, forward: bool) -> List[Task]:
    """Move the cursor to the next or previous goal, wrapping around."""
    goals = sorted(state.goals, key=lambda goal: goal.start.offset)
    if goals == []:
        return []

    cursor = state.editor.cursor()
    if forward:
        target = next((g for g in goals if g.start.offset > cursor), goals[0])
    else:
        target = next(
            (g for g in reversed(goals) if g.start.offset < cursor),
            goals[-1],
        )
    state.editor.set_cursor(target.start.offset)
    return []


async def _pointed(action: Pointed, state: State) -> List[Task]:
    """Run the action for the goal under the cursor, if there is one."""
    cursor = state.editor.cursor()
    goal = next(
        (g for g in state.goals if g.start.offset <= cursor <= g.stop.offset),
        None,
    )
    return action.otherwise if goal is None else action.on_goal(goal)


async def _set_goals(indices: List[int], state: State) -> List[Task]:
    state.goals = state.editor.goals(indices)
    return []


def handle_goal(action: GoalAction) -> List[Task]:
    """Turn a goal action into tasks that read the session state."""
    # pylint: disable=no-else-return
    if isinstance(action, Next):
        return [WithState(partial(_jump, forward=True))]
    elif isinstance(action, Previous):
        return [WithState(partial(_jump, forward=False))]
    elif isinstance(action, Pointed):
        return [WithState(partial(_pointed, action))]
    elif isinstance(action, SetGoals):
        return [WithState(partial(_set_goals, action.indices))]
    raise IT.unexpected(("Next", "Previous", "Pointed", "SetGoals"), action)


def handle_response(response: IT.Response) -> List[Task]:
    """Decide what to do with a response from Agda."""
    # pylint: disable=no-else-return
    if response.kind == "agda2-info-action":
        header = response.args[0] if response.args else ""
        body = response.args[1] if len(response.args) > 1 else ""
        if not isinstance(header, str) or not isinstance(body, str):
            reason = "expected a string header and body"
            return [Error(IT.ParseFailure(str(response), reason))]
        kind = INFO_HEADERS.get(header, HeaderKind.PLAIN)
        return [display(kind, header.strip("*"), body)]
    elif response.kind == "agda2-goals-action":
        # An empty list may be printed as `nil`
        indices = response.args[0] if response.args else []
        if not isinstance(indices, list):
            indices = []
        try:
            return [Goal(SetGoals([int(index) for index in indices]))]
        except (TypeError, ValueError):
            return [Error(IT.ParseFailure(str(response), "invalid goal indices"))]
    elif response.kind in IGNORED_RESPONSES or response.kind.startswith(
        "agda2-highlight-"
    ):
        return []
    return [Debug(f"Unhandled response: {response.kind}")]


def handle_error(err: Exception) -> List[Task]:
    """Report 'err' in the panel."""
    if isinstance(err, AG.ConnectionFailure):
        header = "Connection Error"
    elif isinstance(err, IT.ParseFailure):
        header = "Parse Error"
    else:
        header = "Error"
    return [display(HeaderKind.ERROR, header, str(err))]


def handle_view(response: ViewResponse) -> List[Task]:
    """React to the panel."""
    if isinstance(response, Destroyed):
        return [Terminate()]
    raise IT.unexpected(("Destroyed",), response)


DEFAULT_HANDLERS = Handlers(
    command=handle_command,
    response=handle_response,
    error=handle_error,
    goal=handle_goal,
    view=handle_view,
)


# Agda Mode Session #
COMMANDS: Mapping[str, Command] = {
    "load": Load(),
    "quit": Quit(),
    "next-goal": NextGoal(),
    "previous-goal": PreviousGoal(),
    "auto": Auto(),
    **{f"infer-type[{n.value}]": InferType(n) for n in IT.Normalization},
    **{f"goal-type[{n.value}]": GoalType(n) for n in IT.Normalization},
}


class Session:
    """Forward editor commands to an Agda mode session."""

    def __init__(
        self,
        editor: Editor,
        view: View,
        opts: Optional[Mapping[str, str]] = None,
        handlers: Optional[Handlers] = None,
        establish: Optional[Establish] = None,
    ) -> None:
        self.state = State(editor, view, opts, handlers, establish)
        self.dispatcher = Dispatcher(self.state)

    def handle(self, name: str) -> None:
        """Queue the command called 'name' (e.g., "infer-type[Simplified]")."""
        self.dispatcher.dispatch(COMMANDS[name])

    def view_response(self, response: ViewResponse) -> None:
        """Queue a reaction to the panel."""
        self.dispatcher.dispatch(FromView(response))

    async def stop(self) -> None:
        """Finish every queued command, then shut Agda down."""
        await self.dispatcher.destroy()
        await self.state.destroy()
