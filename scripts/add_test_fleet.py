import asyncio
import sys
import os
sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from database.base import async_session_factory, init_db
from database.models.user import User
from database.models.vehicle import Matriculation, MatriculationStatus, Vehicle, VehicleCategory
from sqlalchemy import func, select


async def add_test_fleet():
    """Add a test fleet and a test client to the database"""
    await init_db()

    async with async_session_factory() as session:
        # Skip if the fleet is already there
        count = await session.scalar(select(func.count()).select_from(Vehicle))

        if count > 0:
            print(f"Database already has {count} vehicles. Skipping.")
            return

        vehicles_data = [
            {
                "brand": "Kia",
                "model": "Picanto",
                "category": VehicleCategory.ECONOMY,
                "price_per_day": 90,
                "plates": ["123TUN456", "124TUN457"],
            },
            {
                "brand": "Hyundai",
                "model": "Tucson",
                "category": VehicleCategory.SUV,
                "price_per_day": 180,
                "plates": ["201TUN1001", "202TUN1002"],
            },
            {
                "brand": "Mercedes",
                "model": "Classe C",
                "category": VehicleCategory.LUXURY,
                "price_per_day": 350,
                "plates": ["215TUN3030"],
            },
        ]

        for vehicle_data in vehicles_data:
            vehicle = Vehicle(
                brand=vehicle_data["brand"],
                model=vehicle_data["model"],
                category=vehicle_data["category"],
                price_per_day=vehicle_data["price_per_day"],
            )
            for plate in vehicle_data["plates"]:
                vehicle.matriculations.append(
                    Matriculation(plate_number=plate, status=MatriculationStatus.AVAILABLE)
                )
            session.add(vehicle)

        session.add(User(
            full_name="Test Client",
            email="client@example.com",
            phone="+21620000000",
            license_id_number="TN-0000001",
        ))

        await session.commit()
        print(f"✅ Added {len(vehicles_data)} test vehicles and one test client")

        print("\n📋 Vehicles:")
        for vehicle_data in vehicles_data:
            print(f"🚗 {vehicle_data['brand']} {vehicle_data['model']} - {', '.join(vehicle_data['plates'])}")


if __name__ == "__main__":
    asyncio.run(add_test_fleet())
