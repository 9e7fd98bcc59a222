import base64
import io
import mimetypes
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional

from PIL import Image
from pypdf import PdfReader

FILE_CATEGORIES: Dict[str, List[str]] = {
    "image": ["jpg", "jpeg", "png", "gif", "webp", "bmp", "tiff", "svg"],
    "document": ["pdf", "doc", "docx", "txt", "md", "rtf", "odt"],
    "audio": ["mp3", "wav", "ogg", "flac", "m4a", "aac"],
    "video": ["mp4", "mov", "avi", "mkv", "webm"],
    "code": ["js", "ts", "py", "rs", "go", "java", "c", "cpp", "h", "css", "html", "vue", "jsx", "tsx"],
    "data": ["json", "csv", "xml", "yaml", "yml", "toml"],
}
TEXT_CATEGORIES = {"document", "code", "data"}
# Pillow cannot rasterize these; pass them through untouched.
_PASSTHROUGH_IMAGES = {"svg"}


def file_extension(path: str) -> str:
    name = str(path).replace("\\", "/").rsplit("/", 1)[-1]
    if "." not in name:
        return ""
    return name.rsplit(".", 1)[-1].lower()


def file_category(path: str) -> str:
    ext = file_extension(path)
    for category, extensions in FILE_CATEGORIES.items():
        if ext in extensions:
            return category
    return "other"


@dataclass
class FileInfo:
    path: str
    name: str
    extension: str
    category: str

    @classmethod
    def from_path(cls, path: str) -> "FileInfo":
        name = str(path).replace("\\", "/").rsplit("/", 1)[-1]
        return cls(path=str(path), name=name, extension=file_extension(path), category=file_category(path))

    def to_dict(self) -> Dict[str, Any]:
        return {"path": self.path, "name": self.name, "extension": self.extension, "category": self.category}


@dataclass
class ContextFile:
    """A flow file input after it has been read into something a model can consume."""

    name: str
    path: str
    mime: str
    category: str
    data: Optional[str] = None
    text: Optional[str] = None

    @property
    def is_image(self) -> bool:
        return self.category == "image"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "path": self.path,
            "mime": self.mime,
            "category": self.category,
            "has_data": bool(self.data),
            "text_chars": len(self.text or ""),
        }


def _image_to_data_url(img: "Image.Image", fmt: str) -> str:
    buffer = io.BytesIO()
    img.save(buffer, format=fmt)
    data = base64.b64encode(buffer.getvalue()).decode("ascii")
    return f"data:image/{fmt.lower()};base64,{data}"


def image_data_url(path: Path, max_size: int = 1024) -> str:
    with Image.open(path) as img:
        img = img.copy()
        if img.mode in ("RGBA", "LA", "P"):
            fmt = "PNG"
        else:
            fmt = "JPEG"
            if img.mode != "RGB":
                img = img.convert("RGB")
        if max_size and max(img.size) > max_size:
            img.thumbnail((max_size, max_size), Image.LANCZOS)
        return _image_to_data_url(img, fmt)


def data_url_from_file(path: Path, mime: str) -> str:
    data = path.read_bytes()
    return f"data:{mime};base64,{base64.b64encode(data).decode('utf-8')}"


def pdf_text(path: Path, max_chars: int = 20000) -> str:
    try:
        reader = PdfReader(str(path))
        parts: List[str] = []
        for page in reader.pages:
            text = page.extract_text() or ""
            if text:
                parts.append(text)
            if sum(len(p) for p in parts) > max_chars:
                break
        return "\n".join(parts)[:max_chars]
    except Exception:
        return ""


def read_text(path: Path, max_chars: int = 50000) -> str:
    return path.read_text(encoding="utf-8", errors="replace")[:max_chars]


def resolve_file(
    name: str,
    path_value: str,
    *,
    image_max_size: int = 1024,
    pdf_max_chars: int = 20000,
    text_max_chars: int = 50000,
) -> ContextFile:
    if str(path_value).startswith("data:"):
        mime = str(path_value)[5:].split(";", 1)[0] or "application/octet-stream"
        category = "image" if mime.startswith("image/") else "audio" if mime.startswith("audio/") else "other"
        return ContextFile(name=name, path="", mime=mime, category=category, data=str(path_value))
    path = Path(path_value).expanduser()
    if not path.exists() or not path.is_file():
        raise ValueError(f"File not found: {path_value}")
    ext = file_extension(path.name)
    category = file_category(path.name)
    mime = mimetypes.guess_type(path.name)[0] or "application/octet-stream"
    ctx = ContextFile(name=name, path=str(path), mime=mime, category=category)
    if category == "image":
        ctx.data = data_url_from_file(path, mime) if ext in _PASSTHROUGH_IMAGES else image_data_url(path, image_max_size)
    elif ext == "pdf":
        ctx.text = pdf_text(path, pdf_max_chars)
    elif category in TEXT_CATEGORIES:
        ctx.text = read_text(path, text_max_chars)
    return ctx
