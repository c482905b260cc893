"""Operator confirmation helpers and the policies built on runtime properties."""

from __future__ import annotations

import logging
from enum import Enum
from typing import Optional

from .context import ExecContext, ExitStatus
from .models import NodePath

logger = logging.getLogger(__name__)

PROP_IND_NO_CONFIRM = "IND_NO_CONFIRM"

# Confirmation contexts
CONTEXT_CREATE_STATIC_VERSION = "CREATE_STATIC_VERSION"
CONTEXT_CREATE_DYNAMIC_VERSION = "CREATE_DYNAMIC_VERSION"
CONTEXT_UPDATE_REFERENCE = "UPDATE_REFERENCE"
CONTEXT_REFERENCE_CHANGE_AFTER_SWITCHING = "REFERENCE_CHANGE_AFTER_SWITCHING"
CONTEXT_COMMIT_REFERENCE_CHANGE_AFTER_ABORT = "COMMIT_REFERENCE_CHANGE_AFTER_ABORT"
CONTEXT_MERGE = "MERGE"
CONTEXT_MERGE_CONFLICTS = "MERGE_CONFLICTS"
CONTEXT_UNSYNC_CHANGES = "UNSYNC_CHANGES"
CONTEXT_MAY_LOSE_COMMITS = "MAY_LOSE_COMMITS"

# Exceptional conditions
COND_USER_ERROR = "USER_ERROR"
COND_BUILD_FAILED = "BUILD_FAILED"
COND_MERGE_CONFLICTS = "MERGE_CONFLICTS"


class YesAlwaysNo(Enum):
    YES = "yes"
    YES_ALWAYS = "always"
    NO = "no"


class AlwaysNeverAsk(Enum):
    ALWAYS = "ALWAYS"
    NEVER = "NEVER"
    ASK = "ASK"


class AlwaysNeverYesNoAsk(Enum):
    ALWAYS = "ALWAYS"
    NEVER = "NEVER"
    YES_ASK = "YES_ASK"
    NO_ASK = "NO_ASK"


def ask_yes_always_no(context: ExecContext, prompt: str) -> YesAlwaysNo:
    answer = context.ui.choose(prompt, [c.value for c in YesAlwaysNo], YesAlwaysNo.YES.value)
    return YesAlwaysNo(answer)


def confirm_continue(context: ExecContext, confirm_context: str) -> bool:
    """Ask whether to continue; a negative answer cancels the run.

    ``IND_NO_CONFIRM`` (all contexts) or ``IND_NO_CONFIRM.<context>`` skips the question.
    Answering "always" sets the latter for the rest of the run. "no" stops the whole run,
    not only the current node.
    """
    properties = context.properties
    if properties.get_bool(PROP_IND_NO_CONFIRM) or properties.get_bool(
        f"{PROP_IND_NO_CONFIRM}.{confirm_context}"
    ):
        return True

    answer = ask_yes_always_no(context, "Do you want to continue?")
    if answer is YesAlwaysNo.YES_ALWAYS:
        properties.set(f"{PROP_IND_NO_CONFIRM}.{confirm_context}", "true")
        return True
    if answer is YesAlwaysNo.YES:
        return True

    context.cancellation.cancel(f"operator declined to continue ({confirm_context})")
    return False


def get_always_never_ask(
    context: ExecContext, name: str, node_path: Optional[NodePath] = None
) -> AlwaysNeverAsk:
    value = context.properties.get(name, node_path)
    if value is None:
        return AlwaysNeverAsk.ASK
    try:
        return AlwaysNeverAsk(value.strip().upper())
    except ValueError:
        logger.warning("Invalid value %r for %s, asking instead", value, name)
        return AlwaysNeverAsk.ASK


def get_always_never_yes_no_ask(
    context: ExecContext,
    name: str,
    node_path: Optional[NodePath] = None,
    default: AlwaysNeverYesNoAsk = AlwaysNeverYesNoAsk.YES_ASK,
) -> AlwaysNeverYesNoAsk:
    value = context.properties.get(name, node_path)
    if value is None:
        return default
    try:
        return AlwaysNeverYesNoAsk(value.strip().upper())
    except ValueError:
        logger.warning("Invalid value %r for %s, using %s", value, name, default.value)
        return default


def decide_always_never_yes_no_ask(
    context: ExecContext, name: str, prompt: str, node_path: Optional[NodePath] = None
) -> bool:
    """Resolve a yes/no decision governed by an always/never/ask property.

    When asked, the answer becomes the default of the next question. Answering
    "always" or "never" sets the property so that the remaining modules are not asked.
    """
    policy = get_always_never_yes_no_ask(context, name, node_path)
    if policy is AlwaysNeverYesNoAsk.ALWAYS:
        return True
    if policy is AlwaysNeverYesNoAsk.NEVER:
        return False

    default = "yes" if policy is AlwaysNeverYesNoAsk.YES_ASK else "no"
    answer = context.ui.choose(prompt, ["yes", "always", "no", "never"], default)
    if answer == "always":
        context.properties.set(name, AlwaysNeverYesNoAsk.ALWAYS.value)
        return True
    if answer == "never":
        context.properties.set(name, AlwaysNeverYesNoAsk.NEVER.value)
        return False
    remembered = AlwaysNeverYesNoAsk.YES_ASK if answer == "yes" else AlwaysNeverYesNoAsk.NO_ASK
    context.properties.set(name, remembered.value)
    return answer == "yes"


def continue_after_exceptional_condition(
    context: ExecContext, condition: str, node_path: Optional[NodePath] = None
) -> bool:
    """Record the exit status of *condition* and tell whether the run may go on.

    ``EXCEPTIONAL_COND.<condition>.EXIT_STATUS`` defaults to WARNING and
    ``EXCEPTIONAL_COND.<condition>.CONTINUE`` defaults to true unless the status is ERROR.
    """
    prefix = f"EXCEPTIONAL_COND.{condition}"
    status_text = context.properties.get(f"{prefix}.EXIT_STATUS", node_path)
    try:
        status = ExitStatus[status_text.strip().upper()] if status_text else ExitStatus.WARNING
    except KeyError:
        logger.warning("Invalid exit status %r for %s", status_text, condition)
        status = ExitStatus.WARNING
    context.raise_exit_status(status)
    return context.properties.get_bool(
        f"{prefix}.CONTINUE", node_path, default=status is not ExitStatus.ERROR
    )
