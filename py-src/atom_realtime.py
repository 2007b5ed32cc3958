from __future__ import annotations

import ctypes
import logging
import sys

import glfw
from OpenGL.GL import *
from OpenGL.GLU import gluLookAt, gluPerspective

from common_quantum import Camera, InvalidQuantumNumbers, sphere_vertices
from orbital_cli import (
    build_parser,
    configure_logging,
    count_from_args,
    get_particle_count,
    prompt_quantum_state,
    run_headless,
    run_self_test,
    sampler_config_from_args,
    state_from_args,
)
from orbital_sampler import (
    INSTANCE_DTYPE,
    BackgroundGeneration,
    OrbitalSampler,
    ParticleSet,
    SamplingCancelled,
    SamplingError,
)

logger = logging.getLogger(__name__)

WIDTH, HEIGHT = 1280, 720
BACKGROUND = (0.05, 0.05, 0.05, 1.0)
PARTICLE_SIZE = 2.0
NUCLEUS_COLOR = (1.0, 0.2, 0.2)


class OrbitalViewer:
    """Orbit camera view of a particle cloud sampled in the background."""

    def __init__(self, job: BackgroundGeneration, r_max: float) -> None:
        self.job = job
        self.r_max = r_max
        self.camera = Camera(radius=max(5.0, 0.8 * r_max), zoom_speed=max(0.5, r_max / 40.0))
        self.nucleus = sphere_vertices(max(0.05, 0.004 * r_max), 10, 10)
        self.vbo = None
        self.num_instances = 0

    def mouse_button_callback(self, window, button, action, mods):
        if button == glfw.MOUSE_BUTTON_LEFT:
            if action == glfw.PRESS:
                self.camera.last_x, self.camera.last_y = glfw.get_cursor_pos(window)
                self.camera.process_mouse_button(True)
            elif action == glfw.RELEASE:
                self.camera.process_mouse_button(False)

    def cursor_callback(self, window, x, y):
        self.camera.process_mouse_move(x, y)

    def scroll_callback(self, window, xoff, yoff):
        self.camera.process_scroll(yoff)

    def key_callback(self, window, key, scancode, action, mods):
        if key == glfw.KEY_ESCAPE and action == glfw.PRESS:
            glfw.set_window_should_close(window, True)

    def upload(self, particles: ParticleSet) -> None:
        data = particles.instance_data()
        self.vbo = glGenBuffers(1)
        glBindBuffer(GL_ARRAY_BUFFER, self.vbo)
        glBufferData(GL_ARRAY_BUFFER, data.nbytes, data, GL_STATIC_DRAW)
        glBindBuffer(GL_ARRAY_BUFFER, 0)
        self.num_instances = len(particles)
        print(f"Done. {self.num_instances} particles ({100.0 * particles.stats.acceptance_rate:.1f}% accepted).")

    def draw_nucleus(self) -> None:
        glColor3f(*NUCLEUS_COLOR)
        glBegin(GL_TRIANGLES)
        for vx, vy, vz in self.nucleus:
            glVertex3f(vx, vy, vz)
        glEnd()

    def draw_particles(self) -> None:
        stride = INSTANCE_DTYPE.itemsize
        glBindBuffer(GL_ARRAY_BUFFER, self.vbo)
        glEnableClientState(GL_VERTEX_ARRAY)
        glEnableClientState(GL_COLOR_ARRAY)
        glVertexPointer(3, GL_FLOAT, stride, ctypes.c_void_p(INSTANCE_DTYPE.fields["position"][1]))
        glColorPointer(4, GL_FLOAT, stride, ctypes.c_void_p(INSTANCE_DTYPE.fields["color"][1]))
        glDrawArrays(GL_POINTS, 0, self.num_instances)
        glDisableClientState(GL_COLOR_ARRAY)
        glDisableClientState(GL_VERTEX_ARRAY)
        glBindBuffer(GL_ARRAY_BUFFER, 0)

    def run(self, title: str) -> None:
        if not glfw.init():
            raise RuntimeError("failed to init glfw")
        win = glfw.create_window(WIDTH, HEIGHT, title, None, None)
        if not win:
            glfw.terminate()
            raise RuntimeError("failed to create window")

        try:
            glfw.make_context_current(win)
            glEnable(GL_DEPTH_TEST)
            glDepthFunc(GL_LESS)
            glEnable(GL_BLEND)
            glBlendFunc(GL_SRC_ALPHA, GL_ONE_MINUS_SRC_ALPHA)
            glEnable(GL_POINT_SMOOTH)
            glPointSize(PARTICLE_SIZE)

            glfw.set_mouse_button_callback(win, self.mouse_button_callback)
            glfw.set_cursor_pos_callback(win, self.cursor_callback)
            glfw.set_scroll_callback(win, self.scroll_callback)
            glfw.set_key_callback(win, self.key_callback)

            while not glfw.window_should_close(win):
                if self.vbo is None and self.job.done:
                    self.upload(self.job.result())

                width, height = glfw.get_framebuffer_size(win)
                glViewport(0, 0, width, height)
                glClearColor(*BACKGROUND)
                glClear(GL_COLOR_BUFFER_BIT | GL_DEPTH_BUFFER_BIT)

                glMatrixMode(GL_PROJECTION)
                glLoadIdentity()
                gluPerspective(45.0, width / max(1, height), 0.1, 10.0 * self.r_max)

                glMatrixMode(GL_MODELVIEW)
                glLoadIdentity()
                cx, cy, cz = self.camera.position()
                tx, ty, tz = self.camera.target
                gluLookAt(cx, cy, cz, tx, ty, tz, 0.0, 1.0, 0.0)

                self.draw_nucleus()
                if self.vbo is not None:
                    self.draw_particles()

                glfw.swap_buffers(win)
                glfw.poll_events()
        finally:
            if not self.job.done:
                print("Window closed before generation finished; cancelling.")
                self.job.abandon()
            if self.vbo is not None:
                glDeleteBuffers(1, [self.vbo])
            glfw.destroy_window(win)
            glfw.terminate()


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    configure_logging(verbose=args.verbose, debug=args.debug)

    try:
        config = sampler_config_from_args(args)
        state = state_from_args(args)
    except (FileNotFoundError, ValueError) as exc:
        parser.error(str(exc))

    try:
        if args.self_test:
            return run_self_test(config)

        if state is None:
            state = prompt_quantum_state()
        count = count_from_args(args) or get_particle_count()

        if args.headless:
            return run_headless(state, count, config, seed=args.seed)

        sampler = OrbitalSampler(state, config)
        print("\nGenerating particle set...")
        job = BackgroundGeneration(sampler, count, seed=args.seed).start()
        OrbitalViewer(job, sampler.envelope.r_max).run(f"Atom Simulator ({state.label})")
    except SamplingCancelled:
        return 130
    except KeyboardInterrupt:
        print()
        return 130
    except (SamplingError, InvalidQuantumNumbers) as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
