"""Root conftest: puts the repository root on sys.path so tests import
`common`, `calendar_sync` and `main` without an editable install."""
