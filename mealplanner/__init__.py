"""Weekly meal planning: AI recipe generation, shopping lists and preference learning."""

__version__ = "0.1.0"
