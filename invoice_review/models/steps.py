"""Pipeline step identifiers, in execution order."""

STEP_EXTRACT = "extract"
STEP_MERGE_CORRECTIONS = "merge_corrections"
STEP_VALIDATE = "validate"
STEP_ROUTE = "route"
STEP_SUSPEND_FOR_REVIEW = "suspend_for_review"
STEP_FINALIZE = "finalize"

PIPELINE_STEPS = (
    STEP_EXTRACT,
    STEP_MERGE_CORRECTIONS,
    STEP_VALIDATE,
    STEP_ROUTE,
    STEP_SUSPEND_FOR_REVIEW,
    STEP_FINALIZE,
)
