"""Business services: booking state machine, payment orchestration, meetings and batch jobs."""
