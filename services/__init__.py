"""
Services package for the interview signal pipeline.

- session_lifecycle: live session state machine and sampler ownership
- signal_sampler: fixed-interval frame sampling loop
- metrics_broadcaster: real-time metrics fan-out (SSE)
- session_store / metrics_store: persistence boundaries
- retention / data_export: retention policy engine and user data export
- azure_face_api: Azure Face API client (optional detector backend)
"""
