def normalize_model_id(model_string: str) -> str:
    """
    Clean a configured model name into an id the SDK accepts.

    Env files tend to carry copy-paste residue:
    - 'model="gemini-2.5-flash"' -> 'gemini-2.5-flash'
    - "'gemini-2.5-pro' " -> 'gemini-2.5-pro'
    - 'models/gemini-2.5-flash' -> 'gemini-2.5-flash'
    """
    if not model_string:
        return model_string

    s = model_string.strip()
    if s.lower().startswith("model="):
        s = s[len("model="):]
    s = s.strip().strip("\"'").strip()
    if s.startswith("models/"):
        s = s[len("models/"):]
    return s
