from __future__ import annotations
from pathlib import Path

from pinpoint.config import load_config
from pinpoint.db import connect, init_db, clear_table, upsert_marker
from pinpoint.simulate import generate_markers

"""
标记存储的样例数据初始化脚本：生成样例标记后写入 Excel 工作簿，便于本地联调。
1) 加载 config.default.json，确定 Excel 文件路径、workspace 与 map_id；
2) 初始化 Excel 并清空 markers 工作表；
3) 生成样例标记（稳定 id 与客户端算法一致）并写入；
4) 输出写入统计并提示下一步启动 app.py。
"""

def main():
    root = Path(__file__).resolve().parent
    data_dir = root / "data"
    cfg = load_config(data_dir / "config.default.json")

    conn = connect(cfg.db_path)
    init_db(conn)
    clear_table(conn, "markers")

    markers = generate_markers(cfg.workspace, cfg.map_id, n=12, seed=7, precision=cfg.stable_id_precision)
    for m in markers:
        upsert_marker(conn, m)

    print(f"Excel 数据写入: {cfg.db_path}")
    print(f"Inserted markers: {len(markers)}")
    print("Next: python app.py")

if __name__ == "__main__":
    main()
