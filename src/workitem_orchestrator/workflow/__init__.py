"""Work item state machine, guardrails and workflow step execution."""
