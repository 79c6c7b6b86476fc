"""Runtime core for one assessment attempt.

  - contracts: shared value types (test cases, hints, verdicts, finalize results)
  - clock / disclosure: anchor-derived countdown and hint / Ask-AI lock schedule
  - execution_client / test_harness / output_normalizer: run code and judge it
  - submission_coordinator: the single durable record of a finished attempt
  - session_machine: lifecycle NOT_STARTED -> ACTIVE -> FINISHED tying it together
"""
