import re

MARKET_NAMES = {
    "sh": "Shanghai A-share",
    "sz": "Shenzhen A-share",
    "bj": "Beijing Stock Exchange",
    "hk": "Hong Kong",
}


def digits(code: str) -> str:
    return re.sub(r"[^0-9]", "", code)


def normalize_stock_code(code: str, exchange: str = "auto") -> str:
    """Map user input such as "600519", "SZ000001" or "00700" onto `<market><digits>`."""
    code = code.lower().strip()
    num = digits(code)

    if exchange == "hk":
        return f"hk{num or code}"
    if exchange and exchange != "auto":
        return f"{exchange}{num}"

    if code.startswith("hk") or (len(num) == 5 and int(num) >= 1):
        return f"hk{num}"
    if num.startswith("6"):
        return f"sh{num}"
    if num.startswith(("0", "3")):
        return f"sz{num}"
    if num.startswith(("8", "4")):
        return f"bj{num}"
    if num.startswith(("5", "1")):
        return f"sh{num}"
    return f"sz{num}"


def market_name(code: str) -> str:
    code = code.lower()
    for prefix, name in MARKET_NAMES.items():
        if code.startswith(prefix):
            return name

    num = digits(code)
    if len(num) == 5:
        return MARKET_NAMES["hk"]
    if num.startswith("6"):
        return MARKET_NAMES["sh"]
    if num.startswith(("0", "3")):
        return MARKET_NAMES["sz"]
    if num.startswith(("8", "4")):
        return MARKET_NAMES["bj"]
    return "A-share"


def to_secid(code: str) -> str:
    """Eastmoney security id: `<market number>.<digits>`."""
    code = code.lower()
    num = digits(code)
    if code.startswith("sh") or (not code.startswith(("sz", "hk")) and num.startswith("6")):
        return f"1.{num}"
    if code.startswith("sz") or code.startswith(("0", "3")):
        return f"0.{num}"
    if code.startswith("hk") or len(num) == 5:
        return f"116.{num}"
    return f"0.{num}"
