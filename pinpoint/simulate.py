from __future__ import annotations
import random
from typing import Dict, List

from .utils import make_stable_id


"""
样例标记生成器
1. 以几个城镇为中心（带邮编与街道名），在中心附近加小扰动生成坐标；
2. 坐标按稳定 id 的精度取整，stable_id 与客户端算法一致，重复运行得到相同的行；
3. 少量标记带备注，便于在界面上检查备注同步。
"""

TOWNS: List[Dict] = [
    {"postal_code": "1050", "town": "København K", "lat": 55.6794, "lon": 12.5850, "streets": ["Kongens Nytorv", "Bredgade", "Store Kongensgade"]},
    {"postal_code": "4000", "town": "Roskilde", "lat": 55.6415, "lon": 12.0803, "streets": ["Algade", "Skomagergade", "Hestetorvet"]},
    {"postal_code": "4300", "town": "Holbæk", "lat": 55.7175, "lon": 11.7128, "streets": ["Ahlgade", "Smedelundsgade"]},
    {"postal_code": "5000", "town": "Odense C", "lat": 55.3959, "lon": 10.3883, "streets": ["Vestergade", "Kongensgade"]},
    {"postal_code": "5500", "town": "Middelfart", "lat": 55.5058, "lon": 9.7307, "streets": ["Algade", "Østergade"]},
    {"postal_code": "8000", "town": "Aarhus C", "lat": 56.1567, "lon": 10.2108, "streets": ["Søndergade", "Ryesgade"]},
]

NOTES = ["Parkering ved indgangen", "Mødested", "Kontrolpost", ""]

def generate_markers(workspace: str, map_id: str, n: int = 12, seed: int = 7, precision: int = 5) -> List[Dict]:
    random.seed(seed)
    out: List[Dict] = []
    for _ in range(n):
        t = random.choice(TOWNS)
        lat = round(t["lat"] + random.uniform(-0.01, 0.01), precision)
        lon = round(t["lon"] + random.uniform(-0.01, 0.01), precision)
        street = random.choice(t["streets"])
        number = random.randint(1, 80)
        out.append({
            "stable_id": make_stable_id(workspace, map_id, lat, lon, precision),
            "workspace": workspace,
            "map_id": map_id,
            "lat": lat,
            "lon": lon,
            "note": random.choice(NOTES),
            "address_text": f"{street} {number}, {t['postal_code']} {t['town']}",
            "postal_code": t["postal_code"],
        })
    return out
