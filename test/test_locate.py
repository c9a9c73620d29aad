# Copyright 2019 Google LLC
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     https://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"Test locating the Terraform binary."

import os
import stat

import pytest
import tfscenario


@pytest.fixture
def bin_dir(tmp_path):
  path = tmp_path / 'terraform'
  path.write_text('#!/bin/sh\nexit 0\n')
  path.chmod(path.stat().st_mode | stat.S_IEXEC)
  return tmp_path


def test_find(bin_dir):
  assert tfscenario.find_terraform(path=str(bin_dir)) == str(
      bin_dir / 'terraform')


def test_find_missing(tmp_path):
  assert tfscenario.find_terraform(path=str(tmp_path)) is None


def test_locate(bin_dir, monkeypatch):
  monkeypatch.setenv('PATH', str(bin_dir))
  found = tfscenario.locate_terraform()
  assert os.path.isabs(found)
  assert found == str(bin_dir / 'terraform')


def test_locate_missing_exits(tmp_path, monkeypatch, capsys):
  monkeypatch.setenv('PATH', str(tmp_path))
  with pytest.raises(SystemExit) as e:
    tfscenario.locate_terraform()
  assert e.value.code == 1
  err = capsys.readouterr().err
  assert err.startswith('lookup terraform binary:')
  assert len(err.strip().splitlines()) == 1


def test_scenario_without_binary_exits(tmp_path, monkeypatch):
  monkeypatch.setenv('PATH', str(tmp_path))
  with pytest.raises(SystemExit):
    tfscenario.UnitScenario()
