from .install import missing_dependencies

# Check for node dependencies and provide helpful warnings
MISSING_DEPENDENCIES = missing_dependencies()
if MISSING_DEPENDENCIES:
    print("\n" + "="*70)
    print("⚠️  RegionSpriteExtractor: required packages not installed!")
    print("="*70)
    print(f"Missing: {', '.join(MISSING_DEPENDENCIES)}")
    print("\nTo install dependencies, run ONE of:")
    print("  • Installer:                  python install.py")
    print("  • Manual:                     pip install -r requirements.txt")
    print("\nInstallation files are in: custom_nodes/ComfyUI-RegionSpriteExtractor/")
    print("="*70 + "\n")

# Import region sprite extraction nodes
from .nodes import NODE_CLASS_MAPPINGS, NODE_DISPLAY_NAME_MAPPINGS

__all__ = ['NODE_CLASS_MAPPINGS', 'NODE_DISPLAY_NAME_MAPPINGS']
