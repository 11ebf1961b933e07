# verify_db.py
import sys
import os
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '.')))

from core.database import SessionLocal
from models.position import Position
from models.metric import PositionMetric
from models.action import EngineAction

def inspect_database(session_factory=SessionLocal, recent_actions: int = 20):
    db = session_factory()
    print("--- Verificando la base de datos ---")

    positions = db.query(Position).order_by(Position.created_at).all()
    print(f"\n[+] Posiciones encontradas: {len(positions)}")
    for pos in positions:
        print(f"  - Posición: {pos.position_key} (Wallet: {pos.wallet_address})")
        print(f"    Pool: {pos.pool_address} | Bins: [{pos.min_bin_id}, {pos.max_bin_id}]")
        print(f"    Valor inicial: {pos.starting_position_value} | Valor actual: {pos.current_value}")
        print(f"    Rebalanceos: {pos.rebalance_count} | Posición anterior: {pos.previous_position_key or '-'}")
        if pos.take_profit_price or pos.stop_loss_price:
            print(f"    Triggers: TP={pos.take_profit_price} SL={pos.stop_loss_price}")
        metrics = db.query(PositionMetric).filter(PositionMetric.position_key == pos.position_key).count()
        print(f"    Métricas guardadas: {metrics}")

    actions = db.query(EngineAction).order_by(EngineAction.created_at.desc()).limit(recent_actions).all()
    print(f"\n[+] Últimas acciones: {len(actions)}")
    for action in actions:
        when = action.created_at.strftime('%Y-%m-%d %H:%M:%S') if action.created_at else "-"
        print(f"  - {when} [{action.engine}] {action.action} {action.position_key or action.pool_address}")

    db.close()

if __name__ == "__main__":
    inspect_database()
