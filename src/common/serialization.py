import hjson
import json
import os
from pydantic import BaseModel, ValidationError
from typing import Any, Callable, TypeVar


ModelType = TypeVar("ModelType", bound=BaseModel)


class IOUtils:
    """
    static class for reading and writing pydantic models as (h)json files.
    Problems are reported twice through callbacks: once in words suited to an end-user,
    once with the details a developer needs.
    """

    def __init__(self):
        raise RuntimeError("This class is not meant to be initialized.")

    @staticmethod
    def hjson_read(
        filepath: str,
        on_error_for_user: Callable[[str], Any],
        on_error_for_dev: Callable[[str], Any]
    ) -> dict | None:
        """
        hjson is a superset of json that also permits comments, unquoted keys and trailing commas.
        :return: The top-level object as a dictionary, or None if the file could not be used
        """
        if not os.path.exists(filepath):
            on_error_for_user("The requested file could not be found.")
            on_error_for_dev(f"No file exists at {filepath}.")
            return None
        if not os.path.isfile(filepath):
            on_error_for_user(
                "The requested location exists but is not a file. "
                "Most likely a directory exists at that location.")
            on_error_for_dev(f"Location {filepath} exists but is not a file.")
            return None
        json_dict: Any
        try:
            with open(filepath, 'r', encoding='utf-8') as input_file:
                json_dict = hjson.load(input_file)
        except OSError as e:
            on_error_for_user("An unexpected file I/O error happened while reading a file.")
            on_error_for_dev(str(e))
            return None
        except hjson.HjsonDecodeError as e:
            on_error_for_user("The file contents could not be parsed.")
            on_error_for_dev(str(e))
            return None
        if not isinstance(json_dict, dict):
            on_error_for_user("The file contents were not in the expected format.")
            on_error_for_dev(f"Expected an object at the top level of {filepath}, got {type(json_dict).__name__}.")
            return None
        return dict(json_dict)

    @staticmethod
    def model_read(
        filepath: str,
        model_type: type[ModelType],
        on_error_for_user: Callable[[str], Any],
        on_error_for_dev: Callable[[str], Any]
    ) -> ModelType | None:
        json_dict: dict | None = IOUtils.hjson_read(
            filepath=filepath,
            on_error_for_user=on_error_for_user,
            on_error_for_dev=on_error_for_dev)
        if json_dict is None:
            return None
        try:
            return model_type(**json_dict)
        except ValidationError as e:
            on_error_for_user(f"The contents of the file are not a valid {model_type.__name__}.")
            on_error_for_dev(str(e))
            return None

    @staticmethod
    def model_write(
        filepath: str,
        model: BaseModel,
        on_error_for_user: Callable[[str], Any],
        on_error_for_dev: Callable[[str], Any],
        indent: int = 4
    ) -> bool:
        """
        Writes plain json (readable back through model_read). Missing parent directories are created.
        :return: True if the file was written, otherwise False.
        """
        path: str = os.path.dirname(os.path.abspath(filepath))
        if os.path.exists(path) and not os.path.isdir(path):
            on_error_for_user(
                "The destination path exists but is not a directory. "
                "Most likely a file exists at that location.")
            on_error_for_dev(f"Location {path} exists but is not a directory.")
            return False
        try:
            os.makedirs(name=path, exist_ok=True)
            with open(filepath, 'w', encoding='utf-8') as output_file:
                json.dump(model.model_dump(mode="json"), output_file, sort_keys=False, indent=indent)
        except OSError as e:
            on_error_for_user("An unexpected file I/O error happened while writing a file.")
            on_error_for_dev(str(e))
            return False
        return True
