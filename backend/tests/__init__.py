"""Backend test suite for the recommendation serving core.

One test module per component, plus API tests using FastAPI's TestClient.
All storage is in-memory and the ranking model is a scripted fake, so no
external services are needed.

Run tests with:
    pytest                          # Run all tests
    pytest backend/tests/test_bandit.py
    pytest --cov=recserve           # With coverage
"""
