"""
Orchestration services for the Flaxeo server.

- arguments: sd-cli / sd-server command construction
- temp_resources: request-scoped temporary files
- process_supervisor: one child process per slot
- dispatcher: request validation, execution and response mapping
- backend_service: engine binary selection and installation
- network_service: LAN reporting and tunnels
- gallery: output listing and PNG parameters
- container: the Services bundle built once per application
"""
