from __future__ import annotations

import importlib.util

# The profiles API validates addresses with pydantic's EmailStr, which needs
# the optional email-validator package.
if importlib.util.find_spec("email_validator") is None:
    collect_ignore_glob = [
        "services/profiles/tests/*",
        "tests/bdd/test_profiles_bdd.py",
        "tests/test_smoke_harness.py",
    ]
