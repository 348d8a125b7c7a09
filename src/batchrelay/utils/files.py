import json
from pathlib import Path


def write_jsonl_file(file_path: str | Path, data: list[dict]) -> None:
    """Write a list of JSON-serializable objects to a JSONL file

    Args:
        file_path (str | Path): The path to the file to write
        data (list[dict]): The objects to write, one per line
    """
    path = Path(file_path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w") as f:
        for sample in data:
            f.write(json.dumps(sample) + "\n")


def read_jsonl_file(file_path: str | Path) -> list[dict]:
    """Read a JSONL file and return its objects, skipping blank lines

    Args:
        file_path (str | Path): The path to the file to read
    """
    with open(file_path, "r") as f:
        return [json.loads(line) for line in f if line.strip()]
