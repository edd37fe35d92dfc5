"""
Test package metadata in pyproject.toml
"""

import sys
import os
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))


def project_table():
    """Top-level key = value lines of the [project] table"""
    values = {}
    in_project = False
    with open(os.path.join(ROOT, 'pyproject.toml'), encoding='utf-8') as f:
        for line in f:
            stripped = line.strip()
            if stripped.startswith('['):
                in_project = stripped == '[project]'
                continue
            if in_project and '=' in stripped and not line.startswith(' '):
                key, value = stripped.split('=', 1)
                values[key.strip()] = value.strip().strip('"')
    return values


def test_project_metadata():
    """Name and version set; no requirements document shipped as the long description"""
    project = project_table()

    assert project['name'] == 'tapaway'
    assert project['version']
    readme = project.get('readme')
    if readme is not None:
        assert readme != 'spec.md'
        assert os.path.exists(os.path.join(ROOT, readme))

    print("✓ Project metadata test passed")
