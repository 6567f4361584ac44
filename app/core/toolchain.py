"""
Capacitor + Gradle toolchain.

Turns an extracted web project (dist/index.html) into an Android APK through
an ordered list of stages. The toolchain itself is an opaque collaborator:
only npm, npx and gradlew are invoked, always as argv lists.

Stage progress floors:
    init 15, install 20, configure 30, platform 40, sync 50,
    shim 52 (best effort), icon 55 (best effort),
    theme 57 (only with a primary color), compile 60
"""
import json
import logging
import os
import re
import stat
from pathlib import Path
from typing import Callable, Optional

from app.core.config import ServiceConfig
from app.core.errors import PipelineError
from app.core.gatekeeper import BuildConfig, is_png
from app.core.pipeline import Stage, StageContext

logger = logging.getLogger(__name__)

# =============================================================================
# Constants
# =============================================================================

CAPACITOR_PACKAGES = [
    "@capacitor/cli@5",
    "@capacitor/core@5",
    "@capacitor/android@5",
    "capacitor-secure-storage-plugin@0.9.0",
]

# Stage timeouts (seconds)
INSTALL_TIMEOUT = 180
PLATFORM_TIMEOUT = 180
SYNC_TIMEOUT = 120

RES_DIR = Path("android/app/src/main/res")

MIPMAP_DIRS = (
    "mipmap-mdpi",
    "mipmap-hdpi",
    "mipmap-xhdpi",
    "mipmap-xxhdpi",
    "mipmap-xxxhdpi",
)

LAUNCHER_ICON_FILES = (
    "ic_launcher.png",
    "ic_launcher_round.png",
    "ic_launcher_foreground.png",
)

# Conventional in-tree icon locations under dist/, checked in order
ICON_CANDIDATES = (
    "icon-512x512.png",
    "icon-512.png",
    "icons/icon-512x512.png",
    "icons/512x512.png",
    "icon-384x384.png",
    "icon-256x256.png",
    "icon-192x192.png",
    "icon-192.png",
    "icons/icon-192x192.png",
    "icons/192x192.png",
    "apple-touch-icon.png",
    "apple-touch-icon-180x180.png",
    "apple-touch-icon-precomposed.png",
    "icon.png",
    "logo.png",
    "app-icon.png",
    "favicon.png",
    "assets/icon.png",
    "assets/logo.png",
    "assets/images/icon.png",
    "assets/images/logo.png",
    "images/icon.png",
    "images/logo.png",
    "img/icon.png",
    "img/logo.png",
    "favicon.ico",
    "favicon-32x32.png",
    "favicon-16x16.png",
)

ICON_EXTENSIONS = frozenset({".png", ".jpg", ".jpeg", ".ico", ".webp"})

# <link> icon references in index.html, either attribute order
ICON_LINK_PATTERNS = [
    re.compile(r"""<link[^>]*rel=["']apple-touch-icon["'][^>]*href=["']([^"']+)["']""", re.IGNORECASE),
    re.compile(r"""<link[^>]*rel=["']icon["'][^>]*href=["']([^"']+)["']""", re.IGNORECASE),
    re.compile(r"""<link[^>]*rel=["']shortcut icon["'][^>]*href=["']([^"']+)["']""", re.IGNORECASE),
    re.compile(r"""<link[^>]*href=["']([^"']+)["'][^>]*rel=["']apple-touch-icon["']""", re.IGNORECASE),
    re.compile(r"""<link[^>]*href=["']([^"']+)["'][^>]*rel=["']icon["']""", re.IGNORECASE),
]

DARKEN_STEP = 30


# =============================================================================
# Secure Storage Shim
# =============================================================================

# Web assets as copied into the Android project by `cap sync`
PUBLIC_INDEX = Path("android/app/src/main/assets/public/index.html")

SECURE_KEY_PREFIX = "nostr:"

# Runs before any app script: localStorage entries under SECURE_KEY_PREFIX are
# kept in an in-memory cache backed by SecureStoragePlugin (Android Keystore)
# and never reach plain WebView storage.
SECURE_STORAGE_SHIM = """
<script>
(function() {
  var PREFIX = '%(prefix)s';
  var cache = new Map();
  var plugin = null;
  var loaded = false;
  var getItem = localStorage.getItem.bind(localStorage);
  var setItem = localStorage.setItem.bind(localStorage);
  var removeItem = localStorage.removeItem.bind(localStorage);

  function secure(key) {
    return typeof key === 'string' && key.indexOf(PREFIX) === 0;
  }

  function getPlugin() {
    if (!plugin && typeof Capacitor !== 'undefined' && Capacitor.Plugins) {
      plugin = Capacitor.Plugins.SecureStoragePlugin || null;
    }
    return plugin;
  }

  async function load() {
    var p = getPlugin();
    if (loaded || !p) return;
    try {
      var keys = (await p.keys()).value || [];
      for (var i = 0; i < keys.length; i++) {
        if (secure(keys[i])) {
          cache.set(keys[i], (await p.get({ key: keys[i] })).value);
        }
      }
      loaded = true;
    } catch (e) {
      console.warn('[SecureStorage] load failed', e);
    }
  }

  localStorage.getItem = function(key) {
    return secure(key) ? (cache.has(key) ? cache.get(key) : null) : getItem(key);
  };

  localStorage.setItem = function(key, value) {
    if (!secure(key)) return setItem(key, value);
    cache.set(key, String(value));
    var p = getPlugin();
    if (p) p.set({ key: key, value: String(value) }).catch(function(e) {
      console.error('[SecureStorage] set failed', key, e);
    });
  };

  localStorage.removeItem = function(key) {
    if (!secure(key)) return removeItem(key);
    cache.delete(key);
    var p = getPlugin();
    if (p) p.remove({ key: key }).catch(function(e) {
      console.error('[SecureStorage] remove failed', key, e);
    });
  };

  load();
  document.addEventListener('deviceready', load);
  window.addEventListener('load', function() { setTimeout(load, 100); });
})();
</script>""" % {"prefix": SECURE_KEY_PREFIX}


def inject_secure_storage_shim(html: str) -> Optional[str]:
    """Insert the shim right after the first <head>, or None if there is none."""
    if "<head>" not in html:
        return None
    return html.replace("<head>", "<head>" + SECURE_STORAGE_SHIM, 1)


# =============================================================================
# Icon & Theme Helpers
# =============================================================================

def _inside(path: Path, root: Path) -> bool:
    real_root = root.resolve()
    real = path.resolve()
    return real == real_root or real_root in real.parents


def find_project_icon(dist: Path, log: Callable[[str], None]) -> Optional[Path]:
    """Locate an icon inside dist/: well-known paths first, then index.html links."""
    for candidate in ICON_CANDIDATES:
        path = dist / candidate
        if path.is_file() and path.suffix.lower() in ICON_EXTENSIONS and _inside(path, dist):
            log(f"Found icon: {candidate}")
            return path

    index = dist / "index.html"
    try:
        html = index.read_text(encoding="utf-8", errors="replace")
    except OSError:
        return None

    for pattern in ICON_LINK_PATTERNS:
        match = pattern.search(html)
        if not match:
            continue
        href = re.sub(r"^\.?/", "", match.group(1).split("?")[0].split("#")[0])
        path = dist / href
        if path.is_file() and _inside(path, dist):
            log(f"Found icon from HTML: {href}")
            return path

    return None


def install_icon(res_dir: Path, icon: bytes) -> int:
    """Write the icon unchanged into every launcher slot. Returns files written."""
    written = 0
    for folder in MIPMAP_DIRS:
        target = res_dir / folder
        target.mkdir(parents=True, exist_ok=True)
        for filename in LAUNCHER_ICON_FILES:
            (target / filename).write_bytes(icon)
            written += 1
    return written


def darken_color(hex_color: str, amount: int = DARKEN_STEP) -> str:
    """Darken each RGB channel of #RRGGBB by amount, floored at 0."""
    value = int(hex_color.lstrip("#"), 16)
    r = max(0, (value >> 16) - amount)
    g = max(0, ((value >> 8) & 0xFF) - amount)
    b = max(0, (value & 0xFF) - amount)
    return f"#{(r << 16) | (g << 8) | b:06x}"


def render_colors_xml(primary_color: str) -> str:
    return (
        '<?xml version="1.0" encoding="utf-8"?>\n'
        "<resources>\n"
        f'    <color name="colorPrimary">{primary_color}</color>\n'
        f'    <color name="colorPrimaryDark">{darken_color(primary_color)}</color>\n'
        f'    <color name="colorAccent">{primary_color}</color>\n'
        "</resources>\n"
    )


def capacitor_config(config: BuildConfig) -> dict:
    return {
        "appId": config.package_id,
        "appName": config.app_name,
        "webDir": "dist",
        "android": {
            "allowMixedContent": True,
            "buildOptions": {"signingType": "apksigner"},
        },
        "server": {"androidScheme": "https"},
    }


# =============================================================================
# Toolchain
# =============================================================================

class CapacitorToolchain:
    """Capacitor 5 + Gradle pipeline producing debug or release APKs."""

    def __init__(self, service_config: ServiceConfig):
        self.java_home = service_config.java_home
        self.android_home = service_config.android_home

    def environment(self) -> dict[str, str]:
        """Toolchain variables overlaid on the sanitized environment."""
        return {
            "JAVA_HOME": self.java_home,
            "ANDROID_HOME": self.android_home,
            "ANDROID_SDK_ROOT": self.android_home,
        }

    def stages(self, config: BuildConfig) -> list[Stage]:
        stages = [
            Stage("init", 15, "Initializing Capacitor project...", self._init),
            Stage(
                "install", 20,
                "Installing Capacitor dependencies (this may take a minute)...",
                self._install, timeout=INSTALL_TIMEOUT,
            ),
            Stage("configure", 30, "Creating Capacitor configuration...", self._configure),
            Stage("platform", 40, "Adding Android platform...", self._add_platform, timeout=PLATFORM_TIMEOUT),
            Stage("sync", 50, "Syncing web assets to Android project...", self._sync, timeout=SYNC_TIMEOUT),
            Stage("shim", 52, "Injecting secure storage shim...", self._shim, best_effort=True),
            Stage("icon", 55, "Resolving app icon...", self._icon, best_effort=True),
        ]
        if config.primary_color:
            stages.append(Stage("theme", 57, "Updating app theme colors...", self._theme))
        stages.append(Stage(
            "compile", 60,
            f"Building APK ({config.build_type.value})... This may take several minutes on first run.",
            self._compile,
        ))
        return stages

    def locate_artifact(self, workdir: Path, config: BuildConfig) -> Path:
        """First .apk in the Gradle output directory for the build type."""
        apk_dir = workdir / "android" / "app" / "build" / "outputs" / "apk" / config.build_type.value
        if not apk_dir.is_dir():
            raise PipelineError("locate", "APK output directory not found")
        apks = sorted(p for p in apk_dir.iterdir() if p.suffix == ".apk" and p.is_file())
        if not apks:
            raise PipelineError("locate", "APK file not found after build")
        return apks[0]

    # -------------------------------------------------------------------------
    # Stage actions
    # -------------------------------------------------------------------------

    def _init(self, ctx: StageContext) -> None:
        ctx.run(["npm", "init", "-y"])

    def _install(self, ctx: StageContext) -> None:
        # --ignore-scripts: the uploaded project never gets to run lifecycle hooks
        ctx.run(["npm", "install", *CAPACITOR_PACKAGES, "--loglevel=error", "--ignore-scripts"])

    def _configure(self, ctx: StageContext) -> None:
        path = ctx.workdir / "capacitor.config.json"
        path.write_text(json.dumps(capacitor_config(ctx.config), indent=2), encoding="utf-8")

    def _add_platform(self, ctx: StageContext) -> None:
        ctx.run(["npx", "cap", "add", "android"])

    def _sync(self, ctx: StageContext) -> None:
        ctx.run(["npx", "cap", "sync", "android"])

    def _shim(self, ctx: StageContext) -> None:
        index = ctx.workdir / PUBLIC_INDEX
        html = inject_secure_storage_shim(index.read_text(encoding="utf-8"))
        if html is None:
            ctx.log("Warning: Could not find <head> tag to inject secure storage shim")
            logger.warning(f"shim_skipped build_id={ctx.build_id} reason=no_head")
            return
        index.write_text(html, encoding="utf-8")
        ctx.log("Secure storage shim injected for Nostr key protection")

    def _icon(self, ctx: StageContext) -> None:
        if ctx.config.icon_bytes is not None:
            ctx.log("Using provided app icon...")
            icon = ctx.config.icon_bytes
        else:
            ctx.log("Auto-detecting app icon from project...")
            path = find_project_icon(ctx.dist_dir, ctx.log)
            if path is None:
                ctx.log("No app icon found, using default Capacitor icon")
                return
            icon = path.read_bytes()

        if not is_png(icon):
            ctx.log("Warning: App icon is not a PNG image, using default Capacitor icon")
            logger.warning(f"icon_not_png build_id={ctx.build_id}")
            return

        install_icon(ctx.workdir / RES_DIR, icon)
        ctx.log("App icon updated successfully")

    def _theme(self, ctx: StageContext) -> None:
        values_dir = ctx.workdir / RES_DIR / "values"
        values_dir.mkdir(parents=True, exist_ok=True)
        (values_dir / "colors.xml").write_text(render_colors_xml(ctx.config.primary_color), encoding="utf-8")

    def _compile(self, ctx: StageContext) -> None:
        android_dir = ctx.workdir / "android"
        gradlew = android_dir / "gradlew"
        if not gradlew.is_file():
            raise PipelineError("compile", "Gradle wrapper not found in android project")
        os.chmod(gradlew, gradlew.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)

        result = ctx.run(
            ["./gradlew", ctx.config.build_type.gradle_task, "--no-daemon", "-q"],
            cwd=android_dir,
        )
        if result.stderr.strip():
            ctx.log(f"Gradle warnings: {result.stderr.strip()[:500]}")
