"""命令行入口（Typer app 定义在 commands.py）。"""
