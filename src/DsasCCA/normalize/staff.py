"""Staff directory extraction.

The ``staff`` field of any activity detail carries the full staff picker in
its ``lParms`` list (``{"key": <id>, "val": <display name>}``). A handful of
portal entries are test accounts or carry junk in the display name; those are
dropped or corrected here.
"""

from __future__ import annotations

from typing import Any, Mapping, Optional

STAFF_BLACKLIST = frozenset(
    {
        "CL1-827",
        "CL1-831",
        "ID: CL1-832",
        "CL1-834",
        "CL1-835",
        "CL1-836",
        "CL1-838",
        "CL1-842",
        "CL1-843",
        "CL1-844",
        "CL1-845",
        "CL1-846",
    }
)

NAME_CORRECTIONS = {
    "Mr TT15 Pri KinLiu TT15 Pri KinLiu": "Mr Kin Liu",
    "Mr TT13 Yanni Shen TT13 Yanni Shen": "Mr Yanni Shen",
    "Mr TT19 Pri Saima Salem TT19 Pri Saima Salem": "Mr Saima Salem",
    "Ms TT Ca(CCA) TT Ma": "Ms Ca Ma",
    "Mr JackyT JackyT": "Mr JackyT",
    "Ms TT Ma TT M": "Ms Ma M",
    "TT01 Fang TT01 Dong": "Mr Fang Dong",
    "Mr TT18 Shane Rose TT18 Shane Rose": "Mr Shane Rose",
    "Ms Caroline Malone(id)": "Ms Caroline Malone",
    "Ms Marina Mao(id)": "Ms Marina Mao",
    "Mrs Amy Yuan (Lower Secondary Secretary初中部学部助理)": "Mrs Amy Yuan",
    "Ms Lily Liu (Primary)": "Ms Lily Liu",
    "Ms Cindy 薛": "Ms Cindy Xue",
    "Ms SiSi Li": "Ms Sisi Li",
}


def _find_staff_options(raw: Mapping[str, Any]) -> Optional[list[Any]]:
    for row in raw.get("newRows") or []:
        for field in row.get("fields") or []:
            if field and field.get("fID") == "staff":
                return field.get("lParms") or []
    return None


def normalize_staff(raw: Mapping[str, Any]) -> dict[str, str]:
    """Return ``{staff_id: display_name}`` from a raw detail payload.

    A fresh mapping is built on every call; an activity without a staff
    field yields an empty mapping.
    """
    staff: dict[str, str] = {}
    for option in _find_staff_options(raw) or []:
        if not isinstance(option, Mapping) or not option.get("key"):
            continue
        key = str(option["key"])
        if key in STAFF_BLACKLIST:
            continue
        name = option.get("val") or ""
        staff[key] = NAME_CORRECTIONS.get(name, name)
    return staff
