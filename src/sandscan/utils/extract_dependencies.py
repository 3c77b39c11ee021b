import json
import os
import re
import tomllib
from typing import List, Tuple

import yaml

from sandscan.engine.errors import SignalExtractionError
from sandscan.engine.records import DependencyRecord

REQUIREMENT_RE = re.compile(r'^([A-Za-z0-9][A-Za-z0-9._-]*)\s*(\[[^\]]*\])?\s*(.*)$')
INSTALL_REQUIRES_RE = re.compile(r'install_requires\s*=\s*\[(.*?)\]', re.DOTALL)
QUOTED_RE = re.compile(r'[\'"]([^\'"]+)[\'"]')


def parse_requirement(line: str):
    """
    Split a PEP 508 style requirement into (name, version). Returns None for
    blank lines, comments, pip options and bare URLs.
    """
    line = line.split('#', 1)[0].strip()
    if not line or line.startswith('-'):
        return None
    if '://' in line and ' @ ' not in line:
        return None
    if ' @ ' in line:
        name, url = line.split(' @ ', 1)
        return name.strip(), url.split(';', 1)[0].strip()
    match = REQUIREMENT_RE.match(line)
    if not match:
        return None
    name, spec = match.group(1), match.group(3).split(';', 1)[0].strip()
    if not spec:
        return name, 'latest'
    if spec.startswith('==') and ',' not in spec:
        return name, spec[2:].strip()
    return name, spec


def _dep(name, version, ecosystem, source, category='production'):
    return DependencyRecord(name=name, version=str(version or 'latest'), ecosystem=ecosystem, category=category, source=source)


def _from_requirement_lines(lines, source, category='production'):
    deps = []
    for line in lines:
        parsed = parse_requirement(line)
        if parsed:
            deps.append(_dep(parsed[0], parsed[1], 'pip', source, category))
    return deps


def parse_package_json(content: str, source='package.json'):
    data = json.loads(content)
    if not isinstance(data, dict):
        raise ValueError('package.json is not an object')
    deps = []
    for section, category in (('dependencies', 'production'), ('optionalDependencies', 'production'),
                              ('devDependencies', 'development')):
        entries = data.get(section) or {}
        if not isinstance(entries, dict):
            raise ValueError(f'{section} is not an object')
        for name, version in entries.items():
            deps.append(_dep(name, version, 'npm', source, category))
    return deps


def parse_requirements_txt(content: str, source='requirements.txt'):
    category = 'development' if 'dev' in source or 'test' in source else 'production'
    return _from_requirement_lines(content.splitlines(), source, category)


def parse_setup_py(content: str, source='setup.py'):
    # setup.py is never executed, only scanned
    match = INSTALL_REQUIRES_RE.search(content)
    if not match:
        return []
    return _from_requirement_lines(QUOTED_RE.findall(match.group(1)), source)


def _poetry_version(spec):
    if isinstance(spec, dict):
        return spec.get('version') or spec.get('git') or spec.get('path') or 'latest'
    return 'latest' if spec in ('*', '') else spec


def parse_pyproject_toml(content: str, source='pyproject.toml'):
    data = tomllib.loads(content)
    deps = []
    project = data.get('project', {})
    deps += _from_requirement_lines(project.get('dependencies', []), source)
    for extra in project.get('optional-dependencies', {}).values():
        deps += _from_requirement_lines(extra, source, 'development')

    poetry = data.get('tool', {}).get('poetry', {})
    sections = [(poetry.get('dependencies', {}), 'production'), (poetry.get('dev-dependencies', {}), 'development')]
    for group in poetry.get('group', {}).values():
        sections.append((group.get('dependencies', {}), 'development'))
    for entries, category in sections:
        for name, spec in entries.items():
            if name.lower() == 'python':
                continue
            deps.append(_dep(name, _poetry_version(spec), 'pip', source, category))
    return deps


def parse_pipfile(content: str, source='Pipfile'):
    data = tomllib.loads(content)
    deps = []
    for section, category in (('packages', 'production'), ('dev-packages', 'development')):
        for name, spec in data.get(section, {}).items():
            deps.append(_dep(name, _poetry_version(spec), 'pip', source, category))
    return deps


def parse_environment_yml(content: str, source='environment.yml'):
    data = yaml.safe_load(content) or {}
    if not isinstance(data, dict):
        raise ValueError('environment file is not a mapping')
    deps = []
    for entry in data.get('dependencies') or []:
        if isinstance(entry, dict):
            deps += _from_requirement_lines(entry.get('pip') or [], source)
        elif isinstance(entry, str):
            name, _, version = entry.partition('=')
            name = name.split('::')[-1].strip()
            if name and name != 'python' and name != 'pip':
                deps.append(_dep(name, version.lstrip('=') or 'latest', 'conda', source))
    return deps


MANIFESTS = {
    'nodejs': [('package.json', parse_package_json)],
    'python': [
        ('requirements.txt', parse_requirements_txt),
        ('requirements-dev.txt', parse_requirements_txt),
        ('setup.py', parse_setup_py),
        ('pyproject.toml', parse_pyproject_toml),
        ('Pipfile', parse_pipfile),
        ('environment.yml', parse_environment_yml),
        ('environment.yaml', parse_environment_yml),
    ],
}


def _within(root, path):
    return os.path.commonpath([root, os.path.realpath(path)]) == root


def extract_dependencies(repo_path, project_type: str) -> Tuple[List[DependencyRecord], List[SignalExtractionError]]:
    """
    Collect declared dependencies from the manifests known for project_type.
    A manifest that cannot be parsed is reported as an error and skipped.
    """
    deps, errors, seen = [], [], set()
    root = os.path.realpath(repo_path)
    for filename, parser in MANIFESTS.get(project_type, []):
        path = os.path.join(repo_path, filename)
        if os.path.islink(path) or (os.path.lexists(path) and not _within(root, path)):
            errors.append(SignalExtractionError(filename, 'manifest is a symlink or points outside the repository'))
            continue
        if not os.path.isfile(path):
            continue
        try:
            with open(path, 'r', encoding='utf-8') as f:
                content = f.read()
            parsed = parser(content, source=filename)
        except (OSError, ValueError, UnicodeDecodeError, yaml.YAMLError, AttributeError, TypeError) as e:
            errors.append(SignalExtractionError(filename, str(e)))
            continue
        for dep in parsed:
            key = (dep.ecosystem, dep.name.lower())
            if key not in seen:
                seen.add(key)
                deps.append(dep)
    return deps, errors
