"""Default step plans and duration estimates per task type."""

from treasury_ops.tasks.models import StepDefinition, TaskType

DEFAULT_STEPS: dict[TaskType, list[StepDefinition]] = {
    TaskType.STATEMENT_PARSE: [
        StepDefinition("File Validation", "Validating uploaded statement files"),
        StepDefinition("Document Processing", "Extracting data from documents"),
        StepDefinition("Transaction Parsing", "Parsing transaction data"),
        StepDefinition("Data Validation", "Validating parsed transaction data"),
        StepDefinition("Analysis Generation", "Generating financial insights and analytics"),
    ],
    TaskType.DATA_SYNC: [
        StepDefinition("Authenticate Connection", "Verify bank connection credentials"),
        StepDefinition("Fetch Data", "Retrieve latest transactions and balances"),
        StepDefinition("Process Data", "Parse and validate retrieved data"),
        StepDefinition("Update Records", "Update local records with new information"),
    ],
    TaskType.ANALYSIS: [
        StepDefinition("Data Collection", "Collecting transaction data for analysis"),
        StepDefinition("Pattern Analysis", "Analyzing spending patterns"),
        StepDefinition("Risk Assessment", "Assessing financial risk indicators"),
        StepDefinition("Insights Generation", "Generating actionable insights"),
    ],
    TaskType.RECOMMENDATION_GENERATION: [
        StepDefinition("Client Profile Analysis", "Analyzing client financial profile"),
        StepDefinition("Product Matching", "Matching suitable treasury products"),
        StepDefinition("Benefit Calculation", "Calculating estimated benefits"),
        StepDefinition("Recommendation Scoring", "Scoring and ranking recommendations"),
    ],
}

# Milliseconds; advisory only.
ESTIMATED_DURATIONS: dict[TaskType, int] = {
    TaskType.STATEMENT_PARSE: 300_000,
    TaskType.DATA_SYNC: 120_000,
    TaskType.ANALYSIS: 180_000,
    TaskType.RECOMMENDATION_GENERATION: 240_000,
}

DEFAULT_ESTIMATED_DURATION = 180_000


def default_steps(task_type: TaskType) -> list[StepDefinition]:
    return list(DEFAULT_STEPS.get(task_type, []))


def estimated_duration(task_type: TaskType) -> int:
    return ESTIMATED_DURATIONS.get(task_type, DEFAULT_ESTIMATED_DURATION)
