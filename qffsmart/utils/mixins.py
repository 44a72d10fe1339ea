"""
Mixin classes for file handling and subclass registration.

Key mixin classes:
- FileMixin: Basic file reading
- YAMLFileMixin: YAML file handling
- RegistryMixin: Automatic subclass registration
"""

import inspect
import os
from functools import cached_property


class FileMixin:
    """
    Mixin class for files that can be opened and read.

    Consumers are expected to set a `filename` attribute.
    """

    @property
    def filepath(self):
        """
        Get the absolute path of the file.

        Returns:
            str: Absolute file path.
        """
        return os.path.abspath(self.filename)

    @property
    def filepath_directory(self):
        """
        Get the directory containing the file.

        Returns:
            str: Directory path.
        """
        return os.path.dirname(self.filepath)

    @property
    def basename(self):
        """
        Get the file name without directory and extension.

        Returns:
            str: Base file name.
        """
        return os.path.splitext(os.path.basename(self.filepath))[0]

    @cached_property
    def contents(self):
        """
        Read the file and return a list of lines without trailing newlines.

        Returns:
            list[str]: Lines of the file.
        """
        with open(self.filepath, "r") as f:
            return [line.rstrip("\n") for line in f.readlines()]

    @cached_property
    def content_lines_string(self):
        """
        Read the whole file as a single string.

        Returns:
            str: File contents.
        """
        with open(self.filepath, "r") as f:
            return f.read()


class YAMLFileMixin(FileMixin):
    """
    Mixin class for YAML file handling and parsing.
    """

    @cached_property
    def yaml_contents_dict(self):
        """
        Parse YAML file contents into a Python object.

        Uses `yaml.safe_load` to read the YAML root (typically a mapping).

        Returns:
            Any: Parsed YAML root object.
        """
        import yaml

        return yaml.safe_load(self.content_lines_string)

    @property
    def yaml_contents_keys(self):
        return self.yaml_contents_dict.keys()

    def yaml_contents_by_key(self, key):
        return self.yaml_contents_dict[key]


class RegistryMeta(type):
    """
    Metaclass that seeds a shared subclass registry on the root class.
    """

    def __init__(cls, name, bases, dct):
        super().__init__(name, bases, dct)
        # Only initialize _REGISTRY in the root parent class
        if not hasattr(cls, "_REGISTRY"):
            cls._REGISTRY = []


class RegistryMixin(metaclass=RegistryMeta):
    """
    Mixin to automatically register subclasses in a shared registry.

    Provides subclass discovery for factory lookups by name, as used for
    program and scheduler adapters.
    """

    # Flag to control whether this class should be registered in the registry
    REGISTERABLE = True

    @classmethod
    def subclasses(cls, allow_abstract=False):
        """
        Get all registered subclasses of this class.

        Args:
            allow_abstract (bool): Whether to include abstract classes.
                Defaults to False.

        Returns:
            list: List of subclass types.
        """
        return cls._subclasses(cls, cls._REGISTRY, allow_abstract)

    @staticmethod
    def _subclasses(parent_cls, registry, allow_abstract):
        return [
            c
            for c in registry
            if issubclass(c, parent_cls)
            and c != parent_cls
            and (not inspect.isabstract(c) or allow_abstract)
        ]

    def __init_subclass__(cls, **kwargs):
        super().__init_subclass__(**kwargs)
        if cls.REGISTERABLE:
            # Append the subclass to the root _REGISTRY
            cls._REGISTRY.append(cls)
