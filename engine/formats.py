PICKER_POLICY = "audio-only (vcodec=none) & asr>=44100; priority opus > aac > other by bitrate"
MIN_SAMPLE_RATE = 44100


class NoSuitableFormat(LookupError):
    def __init__(self, formats, used_client=None):
        super().__init__("No suitable audio-only format ≥44.1 kHz found")
        self.formats = formats
        self.picker = PICKER_POLICY
        self.used_client = used_client


def _to_int(value):
    if value is None or value == "":
        return None
    try:
        return int(float(value))
    except (TypeError, ValueError):
        return None


def _to_number(value):
    if value is None or value == "":
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _codec(value):
    return str(value or "").strip().lower()


def has_audio(fmt):
    codec = _codec((fmt or {}).get("acodec"))
    return bool(codec) and codec != "none"


def describe_format(raw):
    """Project a raw extractor format onto the descriptor the API exposes."""
    abr = raw.get("abr")
    tbr = raw.get("tbr")
    if abr is None and tbr:
        abr = round(tbr)
    return {
        "id": raw.get("format_id") if "format_id" in raw else raw.get("id"),
        "ext": raw.get("ext"),
        "acodec": raw.get("acodec"),
        "vcodec": raw.get("vcodec"),
        "abr": abr,
        "asr": raw.get("asr"),
        "filesize": raw.get("filesize") or raw.get("filesize_approx") or None,
        "tbr": tbr or None,
        "note": raw.get("format_note") or raw.get("note") or "",
    }


def audio_formats(meta):
    formats = (meta or {}).get("formats")
    if not isinstance(formats, list):
        return []
    return [describe_format(f) for f in formats if isinstance(f, dict) and has_audio(f)]


def normalize_format(fmt):
    normalized = dict(fmt)
    abr = _to_number(fmt.get("abr"))
    tbr = _to_number(fmt.get("tbr"))
    if abr is None and tbr:
        abr = float(round(tbr))
    normalized["abr"] = abr
    normalized["tbr"] = tbr
    normalized["asr"] = _to_int(fmt.get("asr"))
    normalized["acodec"] = _codec(fmt.get("acodec"))
    normalized["vcodec"] = _codec(fmt.get("vcodec"))
    return normalized


def is_audio_only(fmt):
    return _codec(fmt.get("vcodec")) == "none"


def is_hi_res(fmt):
    return (_to_int(fmt.get("asr")) or 0) >= MIN_SAMPLE_RATE


def _is_opus(fmt):
    return "opus" in fmt["acodec"]


def _is_aac(fmt):
    return "aac" in fmt["acodec"] or "mp4a" in fmt["acodec"]


def _bitrate_key(fmt):
    return (-(fmt["abr"] or 0), -(fmt["tbr"] or 0))


def _pick(candidates, predicate):
    matching = [fmt for fmt in candidates if predicate(fmt)]
    if not matching:
        return None
    # sorted() is stable, so equal bitrates keep their input order
    return sorted(matching, key=_bitrate_key)[0]


def choose_best_format(formats):
    """Pick the best audio format, or None when nothing qualifies.

    Only audio-only entries at >= 44.1 kHz are eligible. Opus beats AAC beats
    anything else; within a codec family the highest average bitrate wins,
    with total bitrate as the tie-break. The returned dict is the normalized
    copy of the chosen descriptor.
    """
    candidates = [normalize_format(f) for f in formats or [] if isinstance(f, dict) and has_audio(f)]
    hi_audio_only = [f for f in candidates if f["vcodec"] == "none" and (f["asr"] or 0) >= MIN_SAMPLE_RATE]
    return (
        _pick(hi_audio_only, _is_opus)
        or _pick(hi_audio_only, _is_aac)
        or _pick(hi_audio_only, lambda _fmt: True)
    )


def has_hi_res_audio_only(meta):
    formats = (meta or {}).get("formats")
    if not isinstance(formats, list):
        return False
    return any(
        isinstance(f, dict) and has_audio(f) and is_audio_only(f) and is_hi_res(f)
        for f in formats
    )


def pick_thumbnail(meta):
    if not meta:
        return None
    thumb = meta.get("thumbnail")
    if isinstance(thumb, str) and thumb:
        return thumb
    thumbs = meta.get("thumbnails") or []
    if isinstance(thumbs, list) and thumbs:
        ranked = sorted(
            (t for t in thumbs if isinstance(t, dict)),
            key=lambda t: (t.get("width") or 0) * (t.get("height") or 0),
            reverse=True,
        )
        if ranked:
            return ranked[0].get("url")
    return None
