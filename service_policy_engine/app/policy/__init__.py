"""
Policy evaluation package.

Modules of interest:
- models: Policies, conditions, actions, decisions and API payloads.
- evaluator: Pure condition evaluation and the string-expression check.
- validation: Request validation returning structured issue lists.
- engine: The evaluate -> dispatch -> diff -> audit pipeline.

Policies are flat conjunctions of structured conditions. String
expressions are rejected outright and never evaluated.
"""
