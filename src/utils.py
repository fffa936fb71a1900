"""Utility functions for working with kubernetes client models."""

import copy
import logging
from typing import Any


def host_matching(host: str, wildcard: str) -> bool:
    """Check if a host matches a host pattern with an optional leading '*.'.

    The wildcard only covers a single DNS label.

    Example: 'hub.example.com' matches '*.example.com',
    'a.hub.example.com' does not.
    """
    if not wildcard.startswith("*."):
        return host == wildcard

    host_parts = host.split(".")
    wildcard_parts = wildcard.split(".")
    return host_parts[1:] == wildcard_parts[1:]


def recursive_format(format_object: Any, **kwargs: Any) -> Any:
    """Format every string found in a nested structure of dicts, lists and sets.

    Unknown '{keys}' are left in place instead of raising KeyError.
    """
    if isinstance(format_object, str):
        return format_object.format_map(_IgnoreMissing(kwargs))
    if isinstance(format_object, list):
        return [recursive_format(item, **kwargs) for item in format_object]
    if isinstance(format_object, set):
        return {recursive_format(item, **kwargs) for item in format_object}
    if isinstance(format_object, dict):
        return {
            recursive_format(key, **kwargs): recursive_format(value, **kwargs)
            for key, value in format_object.items()
        }
    return format_object


class _IgnoreMissing(dict):
    def __missing__(self, key: str) -> str:
        return f"{{{key}}}"


def get_k8s_model_attribute(model_type: type, field_name: str) -> str:
    """Return the python attribute name for a camelCase or snake_case field.

    Example: (V1Container, 'imagePullPolicy') -> 'image_pull_policy'
    """
    attribute_map = model_type.attribute_map
    if field_name in attribute_map:
        return field_name
    for key, value in attribute_map.items():
        if value == field_name:
            return key
    raise ValueError(
        f"'{model_type.__name__}' did not have an attribute matching '{field_name}'"
    )


def map_dict_keys_to_model_attributes(
    model_type: type, model_dict: dict[str, Any]
) -> dict[str, Any]:
    """Rename the keys of a dict to the model's python attribute names."""
    return {
        get_k8s_model_attribute(model_type, key): value
        for key, value in model_dict.items()
    }


def get_k8s_model(model_type: type, model_dict: Any) -> Any:
    """Return an instance of model_type built from a dict, or the instance itself."""
    if isinstance(model_dict, model_type):
        return model_dict
    if isinstance(model_dict, dict):
        model_dict = map_dict_keys_to_model_attributes(
            model_type, copy.deepcopy(model_dict)
        )
        return model_type(**model_dict)
    raise AttributeError(
        f"Expected object of type 'dict' (or '{model_type.__name__}') "
        f"but got '{type(model_dict).__name__}'."
    )


def get_k8s_model_dict(model_type: type, model: Any) -> dict[str, Any]:
    """Return a dict keyed by python attribute names from a model or a dict."""
    if isinstance(model, model_type):
        return model.to_dict()
    if isinstance(model, dict):
        return map_dict_keys_to_model_attributes(model_type, copy.deepcopy(model))
    raise AttributeError(
        f"Expected object of type '{model_type.__name__}' (or 'dict') "
        f"but got '{type(model).__name__}'."
    )


def update_k8s_model(
    target: Any,
    changes: Any,
    logger: logging.Logger | None = None,
    target_name: str | None = None,
    changes_name: str | None = None,
) -> Any:
    """Apply changes from a dict or a model of the same type onto target.

    Only truthy values of a changes model are applied; a changes dict is
    applied as-is. Overridden non-empty values are logged when a logger
    and changes_name are given.

    Raises:
        AttributeError: target is not a kubernetes model
        ValueError: changes contains a field the model does not have
    """
    model_type = type(target)
    if not hasattr(target, "attribute_map"):
        raise AttributeError(
            f"Attribute 'target' ({model_type.__name__}) must be an object "
            "(such as 'V1PodSpec') with an attribute 'attribute_map'."
        )

    changes_dict = get_k8s_model_dict(model_type, changes)
    for key, value in changes_dict.items():
        if key not in target.attribute_map:
            raise ValueError(
                f"The attribute 'changes' ({type(changes).__name__}) contained "
                f"'{key}' not modeled by '{model_type.__name__}'."
            )
        if isinstance(changes, dict) or value:
            if getattr(target, key) and logger and changes_name:
                logger.info(
                    "%s.%s current value: '%s' is overridden with '%s', "
                    "which is the value of %s.%s.",
                    target_name,
                    key,
                    getattr(target, key),
                    value,
                    changes_name,
                    key,
                )
            setattr(target, key, value)
    return target
