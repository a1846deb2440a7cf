"""Test support utilities for the studyplan package.

Holds in-memory fakes shared by the unit and integration test trees. Nothing
here depends on pytest, so the helpers import cleanly from any test context.
"""

from __future__ import annotations
