"""Test-suite of the Guardião API."""
