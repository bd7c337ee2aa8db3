from pathlib import Path

PYPROJECT = Path(__file__).resolve().parent.parent / "pyproject.toml"


def test_design_notes_are_not_published_as_readme():
    lines = [line.strip() for line in PYPROJECT.read_text(encoding="utf-8").splitlines()]

    assert not any(line.startswith("readme") and "DESIGN.md" in line for line in lines)
    assert 'packages = ["branchchat"]' in lines
