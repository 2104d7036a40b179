# utils/file_processor.py
import json
import pandas as pd
from pathlib import Path
from typing import Dict, List, Any, Optional
import aiofiles

# -----------------------------------------------
# File loading functions
# -----------------------------------------------
def load_json_file(file_path: Path) -> Any:
    """Load a JSON document (HAR or raw entry list) from disk"""
    with open(file_path, 'r', encoding='utf-8', errors='replace') as f:
        return json.load(f)

# -----------------------------------------------
# File writing functions
# -----------------------------------------------
async def write_json_output(data: Dict[str, Any], file_path: Path) -> None:
    """Write data to JSON file asynchronously"""
    try:
        async with aiofiles.open(file_path, 'w', encoding='utf-8') as f:
            await f.write(json.dumps(data, indent=2, ensure_ascii=False, default=str))
    except Exception as e:
        raise Exception(f"Failed to write JSON file {file_path}: {str(e)}")

async def write_csv_output(data: List[Dict[str, Any]], file_path: Path,
                          headers: Optional[List[str]] = None) -> None:
    """
    Write rows to a CSV file asynchronously.

    With no rows and a header list, a header-only CSV is written so that
    downstream readers always find the file and its columns.
    """
    try:
        if not data and not headers:
            return

        df = pd.DataFrame(data, columns=headers) if headers else pd.DataFrame(data)
        async with aiofiles.open(file_path, 'w', newline='', encoding='utf-8') as f:
            await f.write(df.to_csv(index=False))

    except Exception as e:
        raise Exception(f"Failed to write CSV file {file_path}: {str(e)}")

async def write_markdown_output(content: str, file_path: Path) -> None:
    """Write markdown content to file asynchronously"""
    try:
        async with aiofiles.open(file_path, 'w', encoding='utf-8') as f:
            await f.write(content)
    except Exception as e:
        raise Exception(f"Failed to write Markdown file {file_path}: {str(e)}")
