"""
Appointment Bot tests.

Running Tests:
    pytest tests/unit -v

Unit tests never reach Google Calendar, the WhatsApp gateway, the
generative model, Redis or PostgreSQL: collaborators are mocked and the
reminder ledger runs on in-memory SQLite.
"""
