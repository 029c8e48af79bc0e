"""Tests for binary images and the image registry."""
import threading
import time
from concurrent.futures import ThreadPoolExecutor

import pytest

from crash_symbolicator.binary_image import BinaryImage, ImageRegistry, compute_slide
from crash_symbolicator.errors import OverlappingImageRanges
from crash_symbolicator.report import StackFrame
from crash_symbolicator.symbol_owner import StaticSymbolOwner, SymbolOwner


def _images():
    return [
        BinaryImage("/usr/lib/libB.dylib", 0x9000, 0x1000),
        BinaryImage("/bin/app", 0x1000, 0x2000),
        BinaryImage("/usr/lib/libA.dylib", 0x4000, 0x1000),
    ]


def test_image_properties():
    image = BinaryImage("/usr/lib/libobjc.A.dylib", 0x1000, 0x100)
    assert image.name == "libobjc.A.dylib"
    assert image.end_address == 0x1100
    assert image.contains(0x1000)
    assert image.contains(0x10ff)
    assert not image.contains(0x1100)


def test_image_containing():
    """Range lookup works regardless of registration order."""
    registry = ImageRegistry(_images())
    assert registry.image_containing(0x1000).path == "/bin/app"
    assert registry.image_containing(0x2fff).path == "/bin/app"
    assert registry.image_containing(0x4800).path == "/usr/lib/libA.dylib"
    assert registry.image_containing(0x9fff).path == "/usr/lib/libB.dylib"


def test_image_containing_gaps():
    registry = ImageRegistry(_images())
    assert registry.image_containing(0x0fff) is None
    assert registry.image_containing(0x3000) is None
    assert registry.image_containing(0xa000) is None


def test_image_at_exact_address():
    registry = ImageRegistry(_images())
    assert registry.image_at(0x4000).path == "/usr/lib/libA.dylib"
    assert registry.image_at(0x4001) is None
    assert [i.address for i in registry] == [0x1000, 0x4000, 0x9000]
    assert len(registry) == 3


def test_overlapping_images_rejected():
    """Two images claiming the same addresses are a structural error."""
    images = [
        BinaryImage("/bin/app", 0x1000, 0x2000),
        BinaryImage("/usr/lib/libA.dylib", 0x2000, 0x1000),
    ]
    with pytest.raises(OverlappingImageRanges) as excinfo:
        ImageRegistry(images)
    assert "/bin/app" in str(excinfo.value)
    assert "/usr/lib/libA.dylib" in str(excinfo.value)


def test_adjacent_images_allowed():
    images = [
        BinaryImage("/bin/app", 0x1000, 0x1000),
        BinaryImage("/usr/lib/libA.dylib", 0x2000, 0x1000),
    ]
    registry = ImageRegistry(images)
    assert registry.image_containing(0x1fff).path == "/bin/app"
    assert registry.image_containing(0x2000).path == "/usr/lib/libA.dylib"


@pytest.mark.parametrize("order", [(0, 1), (1, 0)])
def test_shared_load_address_rejected(order):
    """An empty image at another image's load address clashes in either order."""
    images = [
        BinaryImage("/bin/app", 0x1000, 0x1000),
        BinaryImage("/usr/lib/libEmpty.dylib", 0x1000, 0),
    ]
    with pytest.raises(OverlappingImageRanges):
        ImageRegistry([images[i] for i in order])


@pytest.mark.parametrize("order", [(0, 1), (1, 0)])
def test_empty_image_inside_range_rejected(order):
    images = [
        BinaryImage("/bin/app", 0x1000, 0x1000),
        BinaryImage("/usr/lib/libEmpty.dylib", 0x1800, 0),
    ]
    with pytest.raises(OverlappingImageRanges):
        ImageRegistry([images[i] for i in order])


def test_image_for_frame():
    """Frames resolve by image address first, then by their own address."""
    registry = ImageRegistry(_images())
    assert registry.image_for_frame(StackFrame(0, 0x1234, 0x4000)).path == "/usr/lib/libA.dylib"
    assert registry.image_for_frame(StackFrame(0, 0x1234)).path == "/bin/app"
    assert registry.image_for_frame(StackFrame(0, 0x1234, 0x7777)) is None
    assert registry.image_for_frame(StackFrame(0, 0)) is None


def test_slide():
    image = BinaryImage("/bin/app", 0x5000, 0x1000)
    owner = StaticSymbolOwner(base_addresses={"/bin/app": 0x1000})
    assert compute_slide(image, owner) == 0x4000
    assert ImageRegistry([image], owner).slide_for(image) == 0x4000


def test_slide_unknown_base():
    """An image whose link address is unknown is treated as unslid."""
    image = BinaryImage("/bin/app", 0x5000, 0x1000)
    assert compute_slide(image, SymbolOwner()) == 0


def test_shared_cache_preferred():
    """Inside the shared cache range, shared-cache images answer the lookup."""
    uikit = BinaryImage("/System/Library/Frameworks/UIKit.framework/UIKit", 0x31a00000, 0x100000)
    app = BinaryImage("/bin/app", 0x4000, 0x4000)
    owner = StaticSymbolOwner(
        shared_cache=(0x30000000, 0x40000000),
        shared_cache_images=[uikit.path],
    )
    registry = ImageRegistry([app, uikit], owner)
    assert registry.in_shared_cache(0x31a0a100)
    assert not registry.in_shared_cache(0x4100)
    assert registry.image_containing(0x31a0a100) is uikit
    assert registry.image_containing(0x4100) is app


class CountingOwner(SymbolOwner):
    def __init__(self):
        self.calls = 0
        self._lock = threading.Lock()

    def symbols(self, image):
        with self._lock:
            self.calls += 1
        time.sleep(0.01)
        return [(0x1000, "foo"), (0x2000, "bar")]


def test_symbol_index_built_once():
    """Concurrent first lookups share a single index build."""
    image = BinaryImage("/bin/app", 0x1000, 0x2000)
    owner = CountingOwner()
    assert not image.has_symbol_index

    with ThreadPoolExecutor(max_workers=8) as executor:
        indexes = list(executor.map(lambda _: image.symbol_index(owner), range(32)))

    assert owner.calls == 1
    assert all(index is indexes[0] for index in indexes)
    assert image.has_symbol_index
    assert indexes[0].lookup(0x2050).name == "bar"


def test_symbol_index_merges_methods():
    """Methods join the index; a symbol wins over a method at the same address."""
    image = BinaryImage("/bin/app", 0x1000, 0x2000)
    owner = StaticSymbolOwner(
        tables={"/bin/app": {0x1000: "foo"}},
        methods={"/bin/app": {0x1000: "-[Foo dup]", 0x1800: "-[Foo bar]"}},
    )
    index = image.symbol_index(owner)
    assert len(index) == 2
    assert index.lookup(0x1010).name == "foo"
    assert index.lookup(0x1810).name == "-[Foo bar]"


def test_encrypted_image_has_empty_index():
    image = BinaryImage("/bin/app", 0x1000, 0x2000)
    owner = StaticSymbolOwner(
        tables={"/bin/app": {0x1000: "foo"}},
        encrypted_images=["/bin/app"],
    )
    index = image.symbol_index(owner)
    assert len(index) == 0
    assert index.lookup(0x1010) is None


def test_registry_system_images():
    """System images are the ones the owner places in the shared cache."""
    app = BinaryImage("/bin/app", 0x1000, 0x1000)
    lib = BinaryImage("/usr/lib/libA.dylib", 0x4000, 0x1000)
    assert ImageRegistry([app, lib]).is_system_image(lib)
    assert not ImageRegistry([app, lib]).is_system_image(app)
    owner = StaticSymbolOwner(shared_cache_images=[app.path])
    assert ImageRegistry([app, lib], owner).is_system_image(app)
    assert not ImageRegistry([app, lib], owner).is_system_image(lib)


def test_image_equality_ignores_index():
    first = BinaryImage("/bin/app", 0x1000, 0x2000)
    second = BinaryImage("/bin/app", 0x1000, 0x2000)
    first.symbol_index(CountingOwner())
    assert first == second
