"""
Test Suite

Structure:
    tests/
    ├── conftest.py               # In-memory database, ticket store, Telegram recorder
    ├── test_numbers.py           # Number and slug normalisation
    ├── test_token_codec.py       # Start token encodings
    ├── test_tenant_store.py      # Scoped paths and batched patches
    ├── test_ticket_store.py      # Ticket cache backends
    ├── test_telegram_client.py   # Bot API retries and payloads
    ├── test_notifier.py          # Call pipeline
    ├── test_linking.py           # Webhook linking
    ├── test_counters.py          # Operator console
    ├── test_services.py          # Tenants, links, announcements, client config
    ├── test_housekeeping.py      # Expired token cleanup
    ├── test_migrate.py           # Migration script
    ├── test_logging.py           # Log masking and formatting
    └── test_api.py               # HTTP surface

To run tests:
    pytest
"""
