"""proposal_server — FastAPI REST API for proposal pre-analysis pipelines.

Runs one ``PipelineOrchestrator`` per pipeline session in-process, starts
stage workers over HTTP, and exposes status, activity and pause / resume /
restart controls.
"""
