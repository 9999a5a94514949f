"""mitigation_reaper — Reconciles the mitigation request ledger with SWF execution state.

Provides:
    - Ledger reads/conditional writes (DynamoDB)
    - SWF execution probing and corrective workflow starts
    - Candidate collection, divergence classification and repair
    - ``run_sweep_once`` entry point for the scheduled Lambda
"""

__version__ = "1.0.0"
