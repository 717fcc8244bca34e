"""
PrintStreamer Test Suite

Test Categories:
- unit/: Fast, isolated unit tests
- streaming/: Encoder supervision, audio fan-out and broadcast coordination
- integration/: HTTP API tests against the FastAPI app
- fixtures/: Shared fakes
"""
