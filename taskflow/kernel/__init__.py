"""
Kernel layer

Foundational records and services the orchestration layer builds on:
- Task, submission and group models
- Engagement / submission ledger (append-only engagement history)
- Role resolution for task actors
"""
