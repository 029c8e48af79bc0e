"""Tests for crash attribution."""
from datetime import datetime

from crash_symbolicator.binary_image import BinaryImage, ImageRegistry
from crash_symbolicator.blame import BlameEngine, BlameFilter, FilterKind, blame, faulting_backtrace
from crash_symbolicator.packages import PackageInfo, StaticPackageDatabase
from crash_symbolicator.report import Backtrace, CrashException, CrashReport, StackFrame, Thread
from crash_symbolicator.symbol_owner import StaticSymbolOwner

SYSTEM_LIB_A = "/usr/lib/libSystemA.dylib"
APP_BINARY = "/var/mobile/Applications/5A1B/Demo.app/Demo"
SYSTEM_LIB_B = "/System/Library/Frameworks/SystemB.framework/SystemB"
TWEAK = "/Library/MobileSubstrate/DynamicLibraries/Tweak.dylib"


def _report(paths, exception_paths=()):
    """Build a report whose crashed thread runs through the given images in depth order."""
    images = {}
    address = 0x10000
    for path in list(paths) + list(exception_paths):
        if path not in {i.path for i in images.values()}:
            images[address] = BinaryImage(path, address, 0x1000)
            address += 0x10000
    by_path = {i.path: i for i in images.values()}

    def backtrace(image_paths):
        return Backtrace([
            StackFrame(depth=depth, address=by_path[p].address + 0x10, image_address=by_path[p].address)
            for depth, p in enumerate(image_paths)
        ])

    return CrashReport(
        process_info={"Process": "Demo [1]", "Path": APP_BINARY},
        exception=CrashException("EXC_BAD_ACCESS (SIGSEGV)", backtrace=backtrace(exception_paths)),
        threads=[
            Thread(0, crashed=True, backtrace=backtrace(paths)),
            Thread(1, backtrace=backtrace([SYSTEM_LIB_A])),
        ],
        binary_images=images,
    )


def _blamable(report):
    return [i.path for i in report.binary_images.values() if i.is_blamable]


def test_blame_skips_system_images():
    """The first non-system image in the faulting backtrace is blamed."""
    report = _report([SYSTEM_LIB_A, APP_BINARY, SYSTEM_LIB_B])
    assert report.blame() is True
    assert report.is_blamed
    assert report.blamed_image.path == APP_BINARY
    assert _blamable(report) == [APP_BINARY]
    assert report.blame_result.depth == 1


def test_blame_path_filter():
    """Excluding the app leaves only system images, so nothing is blamed."""
    report = _report([SYSTEM_LIB_A, APP_BINARY, SYSTEM_LIB_B])
    assert report.blame(BlameFilter.by_path({APP_BINARY})) is False
    assert report.blame_result is None
    assert _blamable(report) == []


def test_blame_system_images_from_shared_cache():
    """Only shared cache images are system images, so a library outside it stays blamable."""
    report = _report([SYSTEM_LIB_A, APP_BINARY, SYSTEM_LIB_B])
    owner = StaticSymbolOwner(shared_cache_images=[SYSTEM_LIB_A])
    assert report.blame(owner=owner) is True
    assert report.blamed_image.path == APP_BINARY

    assert report.blame(BlameFilter.by_path({APP_BINARY}), owner=owner) is True
    assert report.blamed_image.path == SYSTEM_LIB_B
    assert _blamable(report) == [SYSTEM_LIB_B]
    assert report.blame_result.depth == 2


def test_blame_path_filter_moves_on():
    report = _report([SYSTEM_LIB_A, TWEAK, APP_BINARY])
    assert report.blame(BlameFilter.by_path({TWEAK})) is True
    assert report.blamed_image.path == APP_BINARY


def test_blame_path_filter_patterns():
    """Path filters accept globs, file names and directory prefixes."""
    report = _report([TWEAK, APP_BINARY])
    for pattern in ("/Library/MobileSubstrate/*", "Tweak.dylib", "/Library/MobileSubstrate/"):
        report.blame(BlameFilter.by_path([pattern]))
        assert report.blamed_image.path == APP_BINARY, pattern


def test_blame_package_filter():
    installed = datetime(2024, 1, 2, 3, 4, 5)
    packages = StaticPackageDatabase({
        TWEAK: PackageInfo("com.example.tweak", "Tweak", "1.0", installed),
        APP_BINARY: PackageInfo("com.example.demo", "Demo", "2.0", None),
    })
    report = _report([TWEAK, APP_BINARY])

    report.blame(packages=packages)
    assert report.blame_result.path == TWEAK
    assert report.blame_result.package_id == "com.example.tweak"
    assert report.blame_result.install_date == installed

    report.blame(BlameFilter.by_package({"com.example.tweak"}), packages=packages)
    assert report.blame_result.path == APP_BINARY
    assert report.blame_result.package_id == "com.example.demo"


def test_blame_rerun_replaces_annotations():
    """Running blame again with other filters clears the earlier result."""
    report = _report([TWEAK, APP_BINARY])
    report.blame()
    assert _blamable(report) == [TWEAK]

    report.blame(BlameFilter.by_path({TWEAK}))
    assert _blamable(report) == [APP_BINARY]
    assert report.blame_result.path == APP_BINARY


def test_blame_prefers_exception_backtrace():
    """The exception backtrace is the actual fault point."""
    report = _report([SYSTEM_LIB_A, APP_BINARY], exception_paths=[SYSTEM_LIB_B, TWEAK])
    assert [f.image_address for f in faulting_backtrace(report)] == \
        [f.image_address for f in report.exception.backtrace]
    report.blame()
    assert report.blamed_image.path == TWEAK


def test_blame_never_blames_own_path():
    report = _report([TWEAK, APP_BINARY])
    report.blame(own_path=TWEAK)
    assert report.blamed_image.path == APP_BINARY


def test_blame_frames_without_image():
    report = _report([APP_BINARY])
    report.crashed_thread.backtrace.frames.insert(0, StackFrame(depth=0, address=0))
    for depth, frame in enumerate(report.crashed_thread.backtrace.frames):
        frame.depth = depth
    report.blame()
    assert report.blame_result.depth == 1


def test_blame_function():
    """The module-level function returns the blamed image itself."""
    report = _report([SYSTEM_LIB_A, APP_BINARY])
    registry = ImageRegistry(report.binary_images.values())
    image = blame(report, None, registry)
    assert image is report.blamed_image
    assert isinstance(BlameEngine(registry).blame(report), BinaryImage)


def test_filter_constructors():
    assert BlameFilter.none().kind is FilterKind.NONE
    assert BlameFilter.by_path(["/a"]).patterns == frozenset({"/a"})
    assert BlameFilter.by_package(["x"]).kind is FilterKind.BY_PACKAGE
    assert not BlameFilter.by_package(["x"]).excludes_path("/a")
    assert not BlameFilter.by_path(["/a"]).excludes_package("/a")


def test_blame_parsed_report(sample_report):
    """In the sample crash the app binary is the first non-system frame."""
    assert sample_report.blame()
    assert sample_report.blame_result.path == sample_report.process_info["Path"]
    assert sample_report.blamed_image.is_crashed_process_image
