# step_workflows/registry.py
from __future__ import annotations

from typing import Awaitable, Callable, Dict

from ..model import DeployStep, ShellStep, Step, UploadStep
from .deploy import run_deploy
from .shell import run_shell
from .upload import run_upload

StepHandler = Callable[..., Awaitable[None]]

# One handler per step variant; the runner never inspects step types itself.
STEP_HANDLERS: Dict[type, StepHandler] = {
    ShellStep: run_shell,
    UploadStep: run_upload,
    DeployStep: run_deploy,
}


def handler_for(step: Step) -> StepHandler:
    try:
        return STEP_HANDLERS[type(step)]
    except KeyError:
        raise TypeError(f"Unsupported step type: {type(step).__name__}") from None
