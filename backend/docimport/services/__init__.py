"""
Import pipeline services

- job_manager: upload intake and job state machine
- progress: read-only status and section queries
- reconciler: reviewer discard of suggested mappings
- apply_engine: merge accepted mappings into the target document
- extraction_client / target_documents: external collaborators
"""
