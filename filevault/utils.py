# utils.py


def format_file_size(size_bytes: int) -> str:
    """Human readable size: 512 B, 1.50 KB, 3.20 MB."""
    if size_bytes < 1024:
        return f"{size_bytes} B"
    if size_bytes < 1024 * 1024:
        return f"{size_bytes / 1024:.2f} KB"
    return f"{size_bytes / (1024 * 1024):.2f} MB"
