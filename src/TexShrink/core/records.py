"""Record dataclasses shared by the adapter, resolver and orchestrator."""

from collections import OrderedDict
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Tuple


@dataclass(frozen=True)
class ImageDefinition:
    """One ``images[i]`` entry of the container's JSON."""

    index: int
    mime_type: Optional[str] = None
    uri: Optional[str] = None
    name: Optional[str] = None
    buffer_view: Optional[int] = None

    @property
    def is_data_uri(self) -> bool:
        return bool(self.uri) and self.uri.startswith("data:")

    def describe(self) -> str:
        label = self.name or (None if self.is_data_uri else self.uri)
        return f"image[{self.index}] ({label})" if label else f"image[{self.index}]"


@dataclass(eq=False)
class TextureHandle:
    """In-memory reference to one decoded image used by material slots.

    Handles compare and hash by identity, so one handle shared by several
    slots is a single set member.
    """

    key: int
    name: Optional[str] = None
    payload: Optional[bytes] = field(default=None, repr=False)
    mime_type: Optional[str] = None
    texture_indices: Tuple[int, ...] = ()

    def describe(self) -> str:
        return self.name or f"texture_{self.key}"


class ImageState(Enum):
    """Per-image transcode state."""

    PENDING = "pending"
    DECODED = "decoded"
    RESAMPLED = "resampled"
    ENCODED = "encoded"
    SUBSTITUTED = "substituted"
    FAILED = "failed"


@dataclass
class TranscodeResult:
    """Outcome of transcoding one handle."""

    output_name: str
    target_mime: str
    encoded_bytes: bytes = field(default=b"", repr=False)
    state: ImageState = ImageState.PENDING
    error: Optional[str] = None
    image_index: Optional[int] = None
    source_size: Tuple[int, int] = (0, 0)
    output_size: Tuple[int, int] = (0, 0)

    @property
    def succeeded(self) -> bool:
        return self.state in (ImageState.ENCODED, ImageState.SUBSTITUTED)

    @property
    def substituted(self) -> bool:
        return self.state is ImageState.SUBSTITUTED

    def fail(self, reason: str) -> None:
        self.state = ImageState.FAILED
        self.error = reason
        self.encoded_bytes = b""


@dataclass
class DocumentReport:
    """Per-document aggregate: attempted vs. succeeded counts and outputs."""

    name: str
    results: List[TranscodeResult] = field(default_factory=list)
    correlation_misses: int = 0
    output: Optional[bytes] = field(default=None, repr=False)
    error: Optional[str] = None

    @property
    def attempted(self) -> int:
        return len(self.results)

    @property
    def succeeded(self) -> int:
        return sum(1 for r in self.results if r.succeeded)

    @property
    def substituted(self) -> int:
        return sum(1 for r in self.results if r.substituted)

    @property
    def failed_images(self) -> List[TranscodeResult]:
        return [r for r in self.results if not r.succeeded]

    @property
    def ok(self) -> bool:
        """True when the document itself (decode + serialization) succeeded."""
        return self.error is None

    def textures(self) -> Dict[str, bytes]:
        """Return successfully encoded images keyed by output name."""
        return {
            r.output_name: r.encoded_bytes for r in self.results if r.succeeded
        }


class BatchReport(OrderedDict):
    """Ordered mapping of input name -> DocumentReport."""

    @property
    def failed(self) -> List[str]:
        return [name for name, rep in self.items() if not rep.ok]

    @property
    def all_ok(self) -> bool:
        return not self.failed
