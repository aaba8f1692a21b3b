#!/usr/bin/env python3
"""
ComfyUI-RegionSpriteExtractor Dependency Installer

Reports which runtime packages of the node pack cannot be imported and
installs them into the interpreter ComfyUI runs with. Usable from code
(`missing_dependencies`, `install_dependencies`) or as a script.
"""

import importlib.util
import subprocess
import sys
import os


# Import name -> distribution name on the package index
REQUIRED_PACKAGES = {
    "numpy": "numpy",
    "cv2": "opencv-python",
    "PIL": "Pillow",
    "sklearn": "scikit-learn",
    "torch": "torch",
}

_REQUIREMENTS_FILE = os.path.join(os.path.dirname(os.path.abspath(__file__)), "requirements.txt")


def missing_dependencies(packages=None):
    """
    Return the distribution names of required packages that cannot be imported.

    Args:
        packages: Optional mapping of import name to distribution name.
                  Defaults to REQUIRED_PACKAGES.
    """
    if packages is None:
        packages = REQUIRED_PACKAGES
    return [dist for module, dist in packages.items()
            if importlib.util.find_spec(module) is None]


def _pip_command(missing, requirements_path):
    # Pinned versions live in requirements.txt; fall back to bare names without it
    if requirements_path and os.path.exists(requirements_path):
        return [sys.executable, "-m", "pip", "install", "-r", requirements_path]
    return [sys.executable, "-m", "pip", "install"] + list(missing)


def install_dependencies(requirements_path=_REQUIREMENTS_FILE, force=False):
    """
    Install the node pack's missing runtime packages.

    Args:
        requirements_path: requirements file passed to pip. When it does not
                          exist, the missing distributions are installed by name.
        force: Run pip even if every package is already importable

    Returns:
        bool: True if nothing was missing or pip succeeded
    """
    missing = missing_dependencies()
    if not missing and not force:
        print("RegionSpriteExtractor: all dependencies are already installed.")
        return True

    command = _pip_command(missing, requirements_path)
    print("-" * 70)
    print("  RegionSpriteExtractor: installing dependencies")
    print("-" * 70)
    if missing:
        print(f"Missing: {', '.join(missing)}")
    print(f"Interpreter: {sys.executable}")
    print(f"Command: {' '.join(command)}")

    try:
        subprocess.check_call(command)
    except subprocess.CalledProcessError as e:
        print(f"\npip exited with status {e.returncode}.")
        print("Install manually from the ComfyUI environment with:")
        print(f"  {' '.join(command)}")
        return False

    print("\nDone. Restart ComfyUI to load the Region Sprite Extractor nodes.")
    return True


def main():
    force = "--force" in sys.argv[1:]
    sys.exit(0 if install_dependencies(force=force) else 1)


if __name__ == "__main__":
    main()
