"""
Pytest configuration.

Reports each test under the first line of its docstring, keeping the
parameter id of parametrized tests, so the suite reads as a list of behaviors.
"""


def _docstring_summary(function):
    docstring = function.__doc__ or ""
    for line in docstring.strip().splitlines():
        if line.strip():
            return line.strip()
    return None


def pytest_collection_modifyitems(items):
    """Use docstring summaries as test names."""
    for item in items:
        summary = _docstring_summary(item.function)
        if not summary:
            continue
        parameter_part = ""
        if hasattr(item, "callspec"):
            start = item.nodeid.find("[")
            parameter_part = item.nodeid[start:] if start != -1 else ""
        item._nodeid = summary + parameter_part
