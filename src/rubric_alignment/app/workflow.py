"""Task status state machine and rubric-version bookkeeping.

Status flow:

    Task_Creation -> Rubric_V1 -> Rubric_V2 -> Model_Eval_Gemini
        Model_Eval_Gemini -> Human_Eval_GPT      (alignment >= 80)
        Model_Eval_Gemini -> Rubric_Enhancing    (alignment < 80)
        Rubric_Enhancing  -> Human_Eval_Gemini   (next rubric version saved)
        Human_Eval_Gemini -> Model_Eval_Gemini   (human re-scores new version)
    Human_Eval_GPT -> Model_Eval_GPT -> Completed

Each workflow step accepts only the statuses listed in `ALLOWED_STATUSES`.
"""

from __future__ import annotations

from typing import Literal

from rubric_alignment.app.errors import TaskStateError
from rubric_alignment.app.models import EvaluationModel, StatusDisplay, TaskStatus, WorkflowStepInfo

ALIGNMENT_THRESHOLD = 80

WorkflowStep = Literal[
    "rubric_v1",
    "rubric_enhance",
    "human_eval_gemini",
    "model_eval_gemini",
    "human_eval_gpt",
    "model_eval_gpt",
]

TASK_STATUSES: tuple[TaskStatus, ...] = (
    "Task_Creation",
    "Rubric_V1",
    "Rubric_V2",
    "Rubric_Enhancing",
    "Human_Eval_Gemini",
    "Model_Eval_Gemini",
    "Human_Eval_GPT",
    "Model_Eval_GPT",
    "Completed",
)

ALLOWED_STATUSES: dict[WorkflowStep, frozenset[TaskStatus]] = {
    "rubric_v1": frozenset({"Task_Creation"}),
    "rubric_enhance": frozenset({"Rubric_V1", "Rubric_Enhancing"}),
    "human_eval_gemini": frozenset({"Rubric_V2", "Human_Eval_Gemini", "Model_Eval_Gemini"}),
    "model_eval_gemini": frozenset({"Model_Eval_Gemini"}),
    "human_eval_gpt": frozenset({"Human_Eval_GPT", "Model_Eval_GPT"}),
    "model_eval_gpt": frozenset({"Model_Eval_GPT"}),
}

STATE_ERROR_MESSAGES: dict[WorkflowStep, str] = {
    "rubric_v1": "Task is not in the correct state for V1 rubric creation.",
    "rubric_enhance": "Task is not in the correct state for rubric enhancement.",
    "human_eval_gemini": "Task is not in the correct state for human evaluation.",
    "model_eval_gemini": "Task is not in the correct state for model evaluation.",
    "human_eval_gpt": "Task is not in the correct state for GPT evaluation.",
    "model_eval_gpt": "Task is not in the correct state for GPT model evaluation.",
}

# Status reached once a human evaluation for the model has been saved.
AFTER_HUMAN_EVAL: dict[EvaluationModel, TaskStatus] = {
    "gemini": "Model_Eval_Gemini",
    "gpt": "Model_Eval_GPT",
}

_DISPLAY: dict[TaskStatus, StatusDisplay] = {
    "Task_Creation": StatusDisplay(
        label="Task Created", step=1, description="Ready for rubric creation"
    ),
    "Rubric_V1": StatusDisplay(label="V1 Rubric", step=2, description="Initial rubric created"),
    "Rubric_V2": StatusDisplay(label="V2 Rubric", step=3, description="Enhanced rubric ready"),
    "Rubric_Enhancing": StatusDisplay(
        label="Rubric Enhancing",
        step=3,
        description="Alignment below threshold, rubric needs another version",
    ),
    "Human_Eval_Gemini": StatusDisplay(
        label="Human Eval Gemini", step=4, description="Human evaluation in progress"
    ),
    "Model_Eval_Gemini": StatusDisplay(
        label="Model Eval Gemini", step=5, description="Model evaluation in progress"
    ),
    "Human_Eval_GPT": StatusDisplay(
        label="Human Eval GPT", step=6, description="GPT human evaluation in progress"
    ),
    "Model_Eval_GPT": StatusDisplay(
        label="Model Eval GPT", step=7, description="GPT model evaluation in progress"
    ),
    "Completed": StatusDisplay(label="Completed", step=8, description="All evaluations completed"),
}

_PROGRESS: dict[TaskStatus, float] = {
    "Task_Creation": 12.5,
    "Rubric_V1": 25.0,
    "Rubric_V2": 37.5,
    "Rubric_Enhancing": 37.5,
    "Human_Eval_Gemini": 50.0,
    "Model_Eval_Gemini": 62.5,
    "Human_Eval_GPT": 75.0,
    "Model_Eval_GPT": 87.5,
    "Completed": 100.0,
}

_STEPS: tuple[WorkflowStepInfo, ...] = (
    WorkflowStepInfo(
        status="Task_Creation",
        label="Task Setup",
        description="Create prompt and gather AI responses",
        estimated_time="30-45 minutes",
    ),
    WorkflowStepInfo(
        status="Rubric_V1",
        label="Create V1 Rubric",
        description="Generate initial rubric using AI prompt",
        estimated_time="10-15 minutes",
    ),
    WorkflowStepInfo(
        status="Rubric_V2",
        label="Enhance to V2 Rubric",
        description="Refine and improve the initial rubric",
        estimated_time="15-20 minutes",
    ),
    WorkflowStepInfo(
        status="Human_Eval_Gemini",
        label="Human Evaluate Gemini",
        description="Manually evaluate Gemini's response",
        estimated_time="10-15 minutes",
    ),
    WorkflowStepInfo(
        status="Model_Eval_Gemini",
        label="Model Evaluate Gemini",
        description="Get AI to evaluate Gemini's response",
        estimated_time="5-10 minutes",
    ),
    WorkflowStepInfo(
        status="Human_Eval_GPT",
        label="Human Evaluate GPT",
        description="Manually evaluate GPT's response",
        estimated_time="10-15 minutes",
    ),
    WorkflowStepInfo(
        status="Model_Eval_GPT",
        label="Model Evaluate GPT",
        description="Get AI to evaluate GPT's response",
        estimated_time="5-10 minutes",
    ),
    WorkflowStepInfo(
        status="Completed",
        label="Evaluation Complete",
        description="All evaluations finished",
        estimated_time="Complete",
    ),
)


def assert_status(status: TaskStatus, step: WorkflowStep) -> None:
    """Raise `TaskStateError` unless `status` is accepted by `step`."""
    if status not in ALLOWED_STATUSES[step]:
        raise TaskStateError(
            STATE_ERROR_MESSAGES[step],
            detail={"status": status, "step": step},
        )


def human_eval_step(model: EvaluationModel) -> WorkflowStep:
    return "human_eval_gemini" if model == "gemini" else "human_eval_gpt"


def model_eval_step(model: EvaluationModel) -> WorkflowStep:
    return "model_eval_gemini" if model == "gemini" else "model_eval_gpt"


def passes_alignment(alignment: int | None) -> bool:
    return alignment is not None and alignment >= ALIGNMENT_THRESHOLD


def next_status_after_model_eval(model: EvaluationModel, alignment: int) -> TaskStatus:
    """Gemini branches on the threshold; GPT always completes."""
    if model == "gpt":
        return "Completed"
    if passes_alignment(alignment):
        return "Human_Eval_GPT"
    return "Rubric_Enhancing"


def next_status_after_gemini_model_eval(alignment: int) -> TaskStatus:
    return next_status_after_model_eval("gemini", alignment)


def next_status_after_enhancement(status: TaskStatus) -> TaskStatus:
    return "Rubric_V2" if status == "Rubric_V1" else "Human_Eval_Gemini"


def expected_target_version(status: TaskStatus, current_version: int) -> int:
    """Version the next rubric enhancement must carry."""
    if status == "Rubric_V1":
        return 2
    return current_version + 1


def rubric_field_name(version: int) -> str:
    return f"Rubric_V{version}"


def current_rubric_field_name(current_version: int | None) -> str:
    return rubric_field_name(current_version or 1)


def is_incomplete(status: TaskStatus) -> bool:
    return status != "Completed"


def task_progress(status: TaskStatus) -> float:
    return _PROGRESS.get(status, 0.0)


def status_display(status: TaskStatus) -> StatusDisplay:
    return _DISPLAY.get(
        status, StatusDisplay(label="Unknown", step=0, description="Unknown status")
    )


def workflow_steps() -> list[WorkflowStepInfo]:
    return [step.model_copy() for step in _STEPS]
