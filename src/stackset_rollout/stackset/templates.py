"""Template registry for StackSet rollouts.

Stores CloudFormation templates by name, versioned by content hash.
Re-registering different content under an existing name requires an
explicit update.
"""

import logging
from pathlib import Path
from typing import Dict, Iterable, List, Optional

from .models import ALLOWED_CAPABILITIES, Template, TemplateRef


logger = logging.getLogger(__name__)


class TemplateRegistryError(Exception):
    """Base exception for template registry operations."""
    pass


class DuplicateNameError(TemplateRegistryError):
    """Raised when a name is re-registered with different content."""
    pass


class InvalidTemplateError(TemplateRegistryError):
    """Raised when a template body or its capabilities are invalid."""
    pass


class TemplateNotFoundError(TemplateRegistryError):
    """Raised when a template reference is unknown."""
    pass


class TemplateRegistry:
    """In-memory registry of named, content-versioned templates."""

    def __init__(self) -> None:
        self._versions: Dict[str, List[Template]] = {}

    def register(self, name: str, body: str,
                 capabilities: Optional[Iterable[str]] = None,
                 parameters: Optional[Dict[str, str]] = None,
                 update: bool = False) -> TemplateRef:
        """Register a template under a name.

        Registering identical content again returns the existing reference.

        Args:
            name: Template name
            body: CloudFormation template text
            capabilities: Capability flags the template requires
            parameters: Stack parameter values
            update: Allow storing a new version under an existing name

        Returns:
            TemplateRef of the registered version

        Raises:
            InvalidTemplateError: When name, body or capabilities are invalid
            DuplicateNameError: When the name exists with different content
                and ``update`` is False
        """
        if not name:
            raise InvalidTemplateError("Template name must be a non-empty string")
        if not isinstance(body, str) or not body.strip():
            raise InvalidTemplateError(f"Template '{name}' has an empty body")

        capabilities = tuple(sorted(set(capabilities or ())))
        unknown = [c for c in capabilities if c not in ALLOWED_CAPABILITIES]
        if unknown:
            raise InvalidTemplateError(
                f"Unknown capabilities for template '{name}': {', '.join(unknown)}. "
                f"Allowed: {', '.join(ALLOWED_CAPABILITIES)}"
            )

        template = Template(
            name=name,
            body=body,
            capabilities=capabilities,
            parameters={str(k): str(v) for k, v in (parameters or {}).items()},
        )

        versions = self._versions.get(name)
        if versions:
            for existing in versions:
                if existing.version == template.version:
                    return existing.ref
            if not update:
                raise DuplicateNameError(
                    f"Template '{name}' is already registered with different content. "
                    "Pass update=True to register a new version."
                )
            versions.append(template)
            logger.info(f"Registered new version of template {template.ref}")
        else:
            self._versions[name] = [template]
            logger.info(f"Registered template {template.ref}")

        return template.ref

    def register_file(self, name: str, path, capabilities: Optional[Iterable[str]] = None,
                      parameters: Optional[Dict[str, str]] = None,
                      update: bool = False) -> TemplateRef:
        """Register a template whose body is read from a file.

        Raises:
            InvalidTemplateError: When the file cannot be read
        """
        try:
            body = Path(path).read_text(encoding="utf-8")
        except IOError as e:
            raise InvalidTemplateError(f"Unable to read template file {path}: {e}")
        return self.register(name, body, capabilities, parameters, update=update)

    def get(self, ref: TemplateRef) -> Template:
        """Get the template for a reference.

        Raises:
            TemplateNotFoundError: When the name or version is unknown
        """
        for template in self._versions.get(ref.name, []):
            if template.version == ref.version:
                return template
        raise TemplateNotFoundError(f"Template not found: {ref}")

    def latest(self, name: str) -> Template:
        """Get the most recently registered version of a template."""
        versions = self._versions.get(name)
        if not versions:
            raise TemplateNotFoundError(f"Template not found: {name}")
        return versions[-1]

    def versions(self, name: str) -> List[TemplateRef]:
        return [template.ref for template in self._versions.get(name, [])]
