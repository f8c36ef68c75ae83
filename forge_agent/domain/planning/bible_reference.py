"""Bible reference parsing and canonical book tables."""
from typing import Dict, Optional
import re
from pydantic import BaseModel


class ParsedReference(BaseModel):
    book: str
    chapter: int
    verse_start: int
    verse_end: Optional[int] = None


# Canonical lowercase book name -> 3-letter book id
BOOK_NAME_TO_CODE: Dict[str, str] = {
    "genesis": "GEN", "exodus": "EXO", "leviticus": "LEV", "numbers": "NUM",
    "deuteronomy": "DEU", "joshua": "JOS", "judges": "JDG", "ruth": "RUT",
    "1 samuel": "1SA", "2 samuel": "2SA", "1 kings": "1KI", "2 kings": "2KI",
    "1 chronicles": "1CH", "2 chronicles": "2CH", "ezra": "EZR", "nehemiah": "NEH",
    "esther": "EST", "job": "JOB", "psalms": "PSA", "psalm": "PSA",
    "proverbs": "PRO", "ecclesiastes": "ECC", "song of solomon": "SNG",
    "song of songs": "SNG", "isaiah": "ISA", "jeremiah": "JER",
    "lamentations": "LAM", "ezekiel": "EZK", "daniel": "DAN", "hosea": "HOS",
    "joel": "JOL", "amos": "AMO", "obadiah": "OBA", "jonah": "JON",
    "micah": "MIC", "nahum": "NAM", "habakkuk": "HAB", "zephaniah": "ZEP",
    "haggai": "HAG", "zechariah": "ZEC", "malachi": "MAL",
    "matthew": "MAT", "mark": "MRK", "luke": "LUK", "john": "JHN",
    "acts": "ACT", "romans": "ROM", "1 corinthians": "1CO", "2 corinthians": "2CO",
    "galatians": "GAL", "ephesians": "EPH", "philippians": "PHP",
    "colossians": "COL", "1 thessalonians": "1TH", "2 thessalonians": "2TH",
    "1 timothy": "1TI", "2 timothy": "2TI", "titus": "TIT", "philemon": "PHM",
    "hebrews": "HEB", "james": "JAS", "1 peter": "1PE", "2 peter": "2PE",
    "1 john": "1JN", "2 john": "2JN", "3 john": "3JN", "jude": "JUD",
    "revelation": "REV",
}

# Common spellings and abbreviations -> canonical display name
BOOK_ALIASES: Dict[str, str] = {
    # Old Testament
    "gen": "Genesis", "genesis": "Genesis",
    "exo": "Exodus", "exodus": "Exodus",
    "lev": "Leviticus", "leviticus": "Leviticus",
    "num": "Numbers", "numbers": "Numbers",
    "deu": "Deuteronomy", "deut": "Deuteronomy", "deuteronomy": "Deuteronomy",
    "jos": "Joshua", "josh": "Joshua", "joshua": "Joshua",
    "jdg": "Judges", "judg": "Judges", "judges": "Judges",
    "rut": "Ruth", "ruth": "Ruth",
    "1sa": "1 Samuel", "1sam": "1 Samuel", "1 sam": "1 Samuel", "1 samuel": "1 Samuel",
    "2sa": "2 Samuel", "2sam": "2 Samuel", "2 sam": "2 Samuel", "2 samuel": "2 Samuel",
    "1ki": "1 Kings", "1 kings": "1 Kings",
    "2ki": "2 Kings", "2 kings": "2 Kings",
    "1ch": "1 Chronicles", "1 chronicles": "1 Chronicles",
    "2ch": "2 Chronicles", "2 chronicles": "2 Chronicles",
    "ezr": "Ezra", "ezra": "Ezra",
    "neh": "Nehemiah", "nehemiah": "Nehemiah",
    "est": "Esther", "esther": "Esther",
    "job": "Job",
    "psa": "Psalms", "psalm": "Psalms", "psalms": "Psalms", "ps": "Psalms",
    "pro": "Proverbs", "prov": "Proverbs", "proverbs": "Proverbs",
    "ecc": "Ecclesiastes", "eccl": "Ecclesiastes", "ecclesiastes": "Ecclesiastes",
    "sng": "Song of Solomon", "song": "Song of Solomon", "song of solomon": "Song of Solomon",
    "song of songs": "Song of Solomon", "sos": "Song of Solomon",
    "isa": "Isaiah", "isaiah": "Isaiah",
    "jer": "Jeremiah", "jeremiah": "Jeremiah",
    "lam": "Lamentations", "lamentations": "Lamentations",
    "ezk": "Ezekiel", "ezek": "Ezekiel", "ezekiel": "Ezekiel",
    "dan": "Daniel", "daniel": "Daniel",
    "hos": "Hosea", "hosea": "Hosea",
    "jol": "Joel", "joel": "Joel",
    "amo": "Amos", "amos": "Amos",
    "oba": "Obadiah", "obad": "Obadiah", "obadiah": "Obadiah",
    "jon": "Jonah", "jonah": "Jonah",
    "mic": "Micah", "micah": "Micah",
    "nam": "Nahum", "nahum": "Nahum",
    "hab": "Habakkuk", "habakkuk": "Habakkuk",
    "zep": "Zephaniah", "zeph": "Zephaniah", "zephaniah": "Zephaniah",
    "hag": "Haggai", "haggai": "Haggai",
    "zec": "Zechariah", "zech": "Zechariah", "zechariah": "Zechariah",
    "mal": "Malachi", "malachi": "Malachi",
    # New Testament
    "mat": "Matthew", "matt": "Matthew", "matthew": "Matthew",
    "mrk": "Mark", "mark": "Mark",
    "luk": "Luke", "luke": "Luke",
    "jhn": "John", "john": "John",
    "act": "Acts", "acts": "Acts",
    "rom": "Romans", "romans": "Romans",
    "1co": "1 Corinthians", "1cor": "1 Corinthians", "1 cor": "1 Corinthians",
    "1 corinthians": "1 Corinthians",
    "2co": "2 Corinthians", "2cor": "2 Corinthians", "2 cor": "2 Corinthians",
    "2 corinthians": "2 Corinthians",
    "gal": "Galatians", "galatians": "Galatians",
    "eph": "Ephesians", "ephesians": "Ephesians",
    "php": "Philippians", "phil": "Philippians", "philippians": "Philippians",
    "col": "Colossians", "colossians": "Colossians",
    "1th": "1 Thessalonians", "1thes": "1 Thessalonians", "1 thess": "1 Thessalonians",
    "1 thessalonians": "1 Thessalonians",
    "2th": "2 Thessalonians", "2thes": "2 Thessalonians", "2 thess": "2 Thessalonians",
    "2 thessalonians": "2 Thessalonians",
    "1ti": "1 Timothy", "1tim": "1 Timothy", "1 tim": "1 Timothy", "1 timothy": "1 Timothy",
    "2ti": "2 Timothy", "2tim": "2 Timothy", "2 tim": "2 Timothy", "2 timothy": "2 Timothy",
    "tit": "Titus", "titus": "Titus",
    "phm": "Philemon", "phlm": "Philemon", "philemon": "Philemon",
    "heb": "Hebrews", "hebrews": "Hebrews",
    "jas": "James", "james": "James",
    "1pe": "1 Peter", "1pet": "1 Peter", "1 pet": "1 Peter", "1 peter": "1 Peter",
    "2pe": "2 Peter", "2pet": "2 Peter", "2 pet": "2 Peter", "2 peter": "2 Peter",
    "1jn": "1 John", "1john": "1 John", "1 john": "1 John",
    "2jn": "2 John", "2john": "2 John", "2 john": "2 John",
    "3jn": "3 John", "3john": "3 John", "3 john": "3 John",
    "jud": "Jude", "jude": "Jude",
    "rev": "Revelation", "revelation": "Revelation", "revelations": "Revelation",
}

VERSE_REFERENCE_PATTERN = re.compile(
    r"^(\d?\s*[A-Za-z]+(?:\s+[A-Za-z]+)?(?:\s+[A-Za-z]+)?)\s+(\d+):(\d+)(?:-(\d+))?$"
)
CHAPTER_REFERENCE_PATTERN = re.compile(r"^(\d?\s*[A-Za-z]+(?:\s+[A-Za-z]+)?)\s+(\d+)$")

LOWERCASE_WORDS = {"of", "and", "the"}


def _title_case(name: str) -> str:
    words = []
    for idx, word in enumerate(name.split()):
        if word.isdigit():
            words.append(word)
        elif idx > 0 and word.lower() in LOWERCASE_WORDS:
            words.append(word.lower())
        else:
            words.append(word[:1].upper() + word[1:].lower())
    return " ".join(words)


# 3-letter id -> display name, taking the longest known name for each id
BOOK_CODE_TO_NAME: Dict[str, str] = {}
for _name, _code in BOOK_NAME_TO_CODE.items():
    if len(_name) > len(BOOK_CODE_TO_NAME.get(_code, "")):
        BOOK_CODE_TO_NAME[_code] = _name
BOOK_CODE_TO_NAME = {code: _title_case(name) for code, name in BOOK_CODE_TO_NAME.items()}


def book_name_to_id(book_name: str) -> Optional[str]:
    return BOOK_NAME_TO_CODE.get(book_name.lower())


def book_display_name(book_id: Optional[str]) -> Optional[str]:
    if not isinstance(book_id, str) or not book_id.strip():
        return None
    return BOOK_CODE_TO_NAME.get(book_id.strip().upper())


def parse_reference(ref: str) -> Optional[ParsedReference]:
    """Parse 'John 3:16', '1 John 2:1-3' or 'Romans 8' into components"""
    if not ref or not isinstance(ref, str):
        return None

    trimmed = ref.strip()
    match = VERSE_REFERENCE_PATTERN.match(trimmed)

    if not match:
        chapter_match = CHAPTER_REFERENCE_PATTERN.match(trimmed)
        if chapter_match:
            book = BOOK_ALIASES.get(chapter_match.group(1).lower().strip())
            if book:
                return ParsedReference(book=book, chapter=int(chapter_match.group(2)), verse_start=1)
        return None

    book_key = match.group(1).lower().strip()
    book = BOOK_ALIASES.get(book_key)
    if not book:
        # Partial match, e.g. "john chapter" -> "john"
        normalized = re.sub(r"\s+", " ", book_key)
        book = next(
            (name for key, name in BOOK_ALIASES.items() if key == normalized or normalized.startswith(key)),
            None,
        )
        if not book:
            return None

    return ParsedReference(
        book=book,
        chapter=int(match.group(2)),
        verse_start=int(match.group(3)),
        verse_end=int(match.group(4)) if match.group(4) else None,
    )


def normalize_reference(ref: str) -> Optional[str]:
    """'Jn 3:16' style input to canonical 'John 3:16'"""
    parsed = parse_reference(ref)
    if not parsed:
        return None
    if parsed.verse_end:
        return f"{parsed.book} {parsed.chapter}:{parsed.verse_start}-{parsed.verse_end}"
    return f"{parsed.book} {parsed.chapter}:{parsed.verse_start}"


def is_same_passage(ref1: str, ref2: str) -> bool:
    """Same book and chapter"""
    parsed1, parsed2 = parse_reference(ref1), parse_reference(ref2)
    if not parsed1 or not parsed2:
        return False
    return parsed1.book == parsed2.book and parsed1.chapter == parsed2.chapter


def is_same_verse(ref1: str, ref2: str) -> bool:
    """Same chapter with overlapping verse ranges"""
    parsed1, parsed2 = parse_reference(ref1), parse_reference(ref2)
    if not parsed1 or not parsed2:
        return False
    if parsed1.book != parsed2.book or parsed1.chapter != parsed2.chapter:
        return False

    end1 = parsed1.verse_end or parsed1.verse_start
    end2 = parsed2.verse_end or parsed2.verse_start
    return parsed1.verse_start <= end2 and parsed2.verse_start <= end1
