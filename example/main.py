import asyncio

from compute_server import FakeComputeServer
from compute_client.compute_client import ComputeClient
from compute_client.exceptions import StatusWaitTimeoutError
from compute_client.models import ComputeClientConfig, ServerStatus, WaitConfig


def progress_changed(still_waiting: bool):
    print("Still waiting..." if still_waiting else "Done")


async def main():
    PORT = 8000
    server = FakeComputeServer(build_polls=3, delete_polls=2)
    await server.start(port=PORT)
    print(f"Server started on http://127.0.0.1:{PORT}")

    config = ComputeClientConfig(
        base_url=f"http://127.0.0.1:{PORT}",
        wait=WaitConfig(refresh_delay=1.0, timeout=60.0, progress=progress_changed),
    )

    async with ComputeClient(config=config) as client:
        try:
            servers = [
                await client.create_server(f"web-{n}", image_id="img-1", flavor_id="1")
                for n in range(3)
            ]
            active = await asyncio.gather(
                *[client.wait_for_server_status(s.id, ServerStatus.ACTIVE) for s in servers]
            )
            for s in active:
                print(f"Server {s.name} is {s.status}")

            for s in active:
                await s.delete()
            await asyncio.gather(*[s.wait_until_deleted() for s in active])
            print("All servers deleted")
        except StatusWaitTimeoutError as e:
            print(f"Polling timed out: {e}")
        except Exception as e:
            print(f"Error occurred: {e}")

    await server.stop()


if __name__ == "__main__":
    asyncio.run(main())
