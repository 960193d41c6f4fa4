"""Tests are imported as the `tests` package so shared fakes resolve."""
