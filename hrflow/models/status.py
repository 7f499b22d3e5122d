"""
Status vocabularies for workflows, runs, steps and tasks.

Statuses are stored as plain strings; these classes only name them and
define which ones are terminal. Terminal states are final: nothing ever
moves a row out of one.
"""


class WorkflowStatus:
    DRAFT = "draft"
    PUBLISHED = "published"
    ARCHIVED = "archived"


class RunStatus:
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELED = "canceled"
    FAILED = "failed"

    TERMINAL = frozenset({COMPLETED, CANCELED, FAILED})


class StepStatus:
    PENDING = "pending"
    QUEUED = "queued"
    WAITING_INPUT = "waiting_input"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELED = "canceled"

    TERMINAL = frozenset({COMPLETED, FAILED, CANCELED})
    ACTIVE = frozenset({PENDING, QUEUED, WAITING_INPUT, IN_PROGRESS})


class TaskStatus:
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELED = "canceled"

    TERMINAL = frozenset({COMPLETED, FAILED, CANCELED})
